from collections import namedtuple
import logging

from artship import constants
from artship import util
from artship import walk


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

LISTING_FORMAT = '%-8s %-10s %-8s %s'


class Artifact(namedtuple('Artifact', ['path', 'size', 'mode', 'kind'])):
    """A single entry in an image filesystem."""

    __slots__ = ()

    @classmethod
    def from_entry(cls, entry):
        return cls(path=entry.name, size=entry.size, mode=entry.mode,
                   kind=entry.kind)

    @property
    def mode_string(self):
        return '%04o' % self.mode

    @property
    def size_string(self):
        if self.kind in walk.SIZELESS_KINDS:
            return '-'
        return util.format_size(self.size)

    def to_dict(self):
        return {
            'path': self.path,
            'size': self.size,
            'mode': self.mode_string,
            'type': self.kind.value,
        }

    def format_row(self):
        return LISTING_FORMAT % (self.kind.value, self.size_string,
                                 self.mode_string, self.path)


def _wants(kind, type_filter):
    if not type_filter or type_filter == constants.FILTER_ALL:
        return True
    return kind.value == type_filter


def list_artifacts(stream, type_filter=None):
    """Return the artifacts in a tar stream, in stream order.

    Args:
        stream: A tar stream, see walk.walk().
        type_filter: None, '' or 'all' to keep everything, otherwise a
            TypeKind value such as 'file' or 'symlink'.
    """
    artifacts = []

    def visitor(_reader, entry):
        if _wants(entry.kind, type_filter):
            artifacts.append(Artifact.from_entry(entry))

    walk.walk(stream, visitor)
    LOG.debug('Found %d artifacts' % len(artifacts))
    return artifacts


def build_catalog(stream, type_filter=None):
    """Return a dict of path -> Artifact for every entry in a tar stream.

    The whole stream is read. If a path appears more than once the last
    entry wins, as it would when the archive is unpacked.
    """
    catalog = {}
    for artifact in list_artifacts(stream, type_filter=type_filter):
        catalog[artifact.path] = artifact
    return catalog


def format_artifacts(artifacts, detailed=False):
    if not artifacts:
        return 'No artifacts found'

    if not detailed:
        return '\n'.join(a.path for a in artifacts)

    lines = [LISTING_FORMAT % ('TYPE', 'SIZE', 'MODE', 'PATH'),
             '-------- ---------- -------- --------']
    for a in artifacts:
        lines.append(a.format_row())
    return '\n'.join(lines)
