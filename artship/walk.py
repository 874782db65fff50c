"""Streaming iteration over tar formatted image filesystems.

Every artifact operation (listing, cataloguing, searching and extraction)
is built on walk(). It reads the archive strictly sequentially, so it works
on non-seekable streams such as an HTTP response or a pipe, and it hides
whiteout entries because they describe deletions rather than artifacts.
"""

from collections import namedtuple
import enum
import io
import logging
import tarfile
import zlib

from artship import constants
from artship.util import ArtshipException


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class WalkError(ArtshipException):
    """Raised when a tar stream cannot be walked to completion."""
    pass


class TypeKind(enum.Enum):
    FILE = 'file'
    DIR = 'dir'
    SYMLINK = 'symlink'
    HARDLINK = 'hardlink'
    CHARDEV = 'chardev'
    BLOCKDEV = 'blockdev'
    FIFO = 'fifo'
    UNKNOWN = 'unknown'


# Python's tarfile resolves GNUTYPE_LONGNAME, GNUTYPE_LONGLINK and pax
# headers itself, so they never reach this table.
TARFILE_TYPE_MAP = {
    tarfile.REGTYPE: TypeKind.FILE,
    tarfile.AREGTYPE: TypeKind.FILE,
    tarfile.CONTTYPE: TypeKind.FILE,
    tarfile.GNUTYPE_SPARSE: TypeKind.FILE,
    tarfile.DIRTYPE: TypeKind.DIR,
    tarfile.SYMTYPE: TypeKind.SYMLINK,
    tarfile.LNKTYPE: TypeKind.HARDLINK,
    tarfile.CHRTYPE: TypeKind.CHARDEV,
    tarfile.BLKTYPE: TypeKind.BLOCKDEV,
    tarfile.FIFOTYPE: TypeKind.FIFO,
}

# Kinds the rest of the system knows how to handle fully
LINK_KINDS = (TypeKind.SYMLINK, TypeKind.HARDLINK)
SIZELESS_KINDS = (TypeKind.DIR, TypeKind.SYMLINK, TypeKind.HARDLINK)


def kind_for_member(member):
    """Map a TarInfo's type flag to a TypeKind."""
    kind = TARFILE_TYPE_MAP.get(member.type)
    if kind is None:
        LOG.debug('Unrecognised tar type flag %r for %s'
                  % (member.type, member.name))
        return TypeKind.UNKNOWN
    return kind


TarEntry = namedtuple('TarEntry', ['name', 'size', 'mode', 'kind', 'linkname'])


def entry_for_member(member):
    kind = kind_for_member(member)
    linkname = member.linkname if kind in LINK_KINDS else ''
    return TarEntry(name=member.name, size=member.size, mode=member.mode,
                    kind=kind, linkname=linkname)


class Signal(enum.Enum):
    CONTINUE = 'continue'
    STOP = 'stop'


class Fail(object):
    """Returned by a visitor to abort the walk because of an error."""

    def __init__(self, error):
        self.error = error

    def __repr__(self):
        return 'Fail(%r)' % self.error


def is_whiteout(path):
    return constants.WHITEOUT_MARKER in path


def walk(stream, visitor):
    """Walk a tar stream, calling visitor(reader, entry) for each artifact.

    Args:
        stream: A readable file-like object containing a tar archive. It is
            consumed sequentially and never seeked. Compressed archives
            (gzip, bzip2, xz) are detected transparently.
        visitor: A callable taking (reader, entry). reader yields exactly the
            content of a regular file entry (it is empty for every other
            kind) and is only valid until the visitor returns. The visitor
            returns Signal.CONTINUE (or None) to keep going, Signal.STOP to
            end the walk early, or Fail(exception) to abort it.

    Returns:
        The number of entries handed to the visitor.

    Raises:
        WalkError: If the stream is not a valid tar archive, is truncated,
            or the visitor returned a Fail.
    """
    visited = 0
    try:
        with tarfile.open(fileobj=stream, mode='r|*') as tar:
            for member in tar:
                if is_whiteout(member.name):
                    LOG.debug('Skipping whiteout entry %s' % member.name)
                    continue

                entry = entry_for_member(member)
                if member.isreg():
                    reader = tar.extractfile(member)
                else:
                    reader = io.BytesIO(b'')

                visited += 1
                signal = visitor(reader, entry)
                if signal is None or signal is Signal.CONTINUE:
                    continue
                if signal is Signal.STOP:
                    LOG.debug('Walk stopped early at %s' % entry.name)
                    return visited
                if isinstance(signal, Fail):
                    raise WalkError('Failed processing tar entry %s: %s'
                                    % (entry.name, signal.error)) \
                        from signal.error
                raise WalkError('Visitor returned unexpected value %r for %s'
                                % (signal, entry.name))

    except (tarfile.TarError, EOFError, zlib.error) as e:
        raise WalkError('Failed reading tar stream: %s' % e) from e

    return visited
