import logging
import os
import posixpath
import shutil
import time

from artship import match
from artship.util import ArtshipException, InvalidInputError, format_size
from artship import walk


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

DEFAULT_DIR_MODE = 0o755


class ExtractionError(ArtshipException):
    """Raised when an artifact cannot be written to the local filesystem."""
    pass


class ExtractSummary(object):
    def __init__(self):
        self.files_extracted = 0
        self.dirs_created = 0
        self.links_created = 0
        self.total_size = 0
        self.skipped = 0
        self.elapsed = 0.0

        # Only meaningful for selective extraction
        self.selectors_requested = 0
        self.selectors_found = 0

    def to_dict(self):
        return {
            'files_extracted': self.files_extracted,
            'dirs_created': self.dirs_created,
            'links_created': self.links_created,
            'total_size_bytes': self.total_size,
            'elapsed': round(self.elapsed, 3),
        }

    def __str__(self):
        return ('Files extracted: %d\n'
                'Directories created: %d\n'
                'Links created: %d\n'
                'Total size: %s\n'
                'Execution time: %.3fs'
                % (self.files_extracted, self.dirs_created,
                   self.links_created, format_size(self.total_size),
                   self.elapsed))


def is_contained(root, target):
    """Lexically check that target does not escape root."""
    root = os.path.abspath(root)
    target = os.path.abspath(target)
    return target == root or target.startswith(root + os.sep)


def resolves_inside(root, target):
    """Check that the directory target would be written into, with any
    symlinks already on disk followed, is still below root.
    """
    root = os.path.realpath(root)
    parent = os.path.realpath(os.path.dirname(os.path.abspath(target)))
    return parent == root or parent.startswith(root + os.sep)


def _ensure_parent(target):
    parent = os.path.dirname(target)
    if parent:
        os.makedirs(parent, exist_ok=True)


def _remove_existing(target):
    if os.path.lexists(target) and not (
            os.path.isdir(target) and not os.path.islink(target)):
        os.unlink(target)


class _Placer(object):
    """Writes tar entries to disk and keeps the running summary.

    Directory permissions are applied by finish() once every entry has been
    written, so that a read-only directory in the image does not stop its
    own children from being created.
    """

    def __init__(self, link_root, summary):
        self.link_root = link_root
        self.summary = summary
        self._deferred_dirs = []

    def place(self, reader, entry, target):
        kind = entry.kind
        if kind == walk.TypeKind.FILE:
            self._write_file(reader, entry, target)
        elif kind == walk.TypeKind.DIR:
            if os.path.islink(target):
                # The deferred chmod would follow the link
                LOG.warning('Skipping directory %s, a symlink already '
                            'exists at %s' % (entry.name, target))
                self.summary.skipped += 1
                return
            os.makedirs(target, mode=DEFAULT_DIR_MODE, exist_ok=True)
            self._deferred_dirs.append((target, entry.mode))
            self.summary.dirs_created += 1
        elif kind == walk.TypeKind.SYMLINK:
            _ensure_parent(target)
            _remove_existing(target)
            os.symlink(entry.linkname, target)
            self.summary.links_created += 1
        elif kind == walk.TypeKind.HARDLINK:
            self._write_hardlink(entry, target)
        else:
            LOG.warning('Skipping unsupported %s entry %s'
                        % (kind.value, entry.name))
            self.summary.skipped += 1

    def _write_file(self, reader, entry, target):
        _ensure_parent(target)
        _remove_existing(target)
        with open(target, 'wb') as f:
            shutil.copyfileobj(reader, f)
        os.chmod(target, entry.mode & 0o7777)
        self.summary.files_extracted += 1
        self.summary.total_size += entry.size

    def _write_hardlink(self, entry, target):
        source = os.path.join(self.link_root, entry.linkname.lstrip('/'))
        if not (is_contained(self.link_root, source) and
                resolves_inside(self.link_root, source)):
            LOG.warning('Skipping hard link %s whose target %s is outside '
                        'the output directory' % (entry.name, entry.linkname))
            self.summary.skipped += 1
            return

        _ensure_parent(target)
        _remove_existing(target)
        try:
            os.link(source, target, follow_symlinks=False)
            self.summary.links_created += 1
            return
        except OSError as e:
            LOG.warning('Could not create hard link %s -> %s (%s), copying '
                        'content instead' % (target, entry.linkname, e))

        try:
            shutil.copy2(source, target, follow_symlinks=False)
        except OSError as e:
            LOG.warning('Could not copy %s to %s either (%s), skipping'
                        % (entry.linkname, target, e))
            self.summary.skipped += 1
            return

        self.summary.files_extracted += 1
        if not os.path.islink(target):
            self.summary.total_size += os.path.getsize(target)

    def finish(self):
        # Deepest first, so a parent never becomes read-only before a child
        # has been adjusted.
        for target, mode in sorted(self._deferred_dirs,
                                   key=lambda d: d[0].count(os.sep),
                                   reverse=True):
            if os.path.islink(target):
                LOG.warning('Not setting permissions on %s, it has been '
                            'replaced by a symlink' % target)
                continue
            try:
                os.chmod(target, mode & 0o7777)
            except OSError as e:
                raise ExtractionError('Failed setting permissions on %s: %s'
                                      % (target, e)) from e


def _visit_safely(placer, reader, entry, target):
    try:
        placer.place(reader, entry, target)
    except OSError as e:
        error = ExtractionError(
            'Failed writing %s to %s: %s' % (entry.name, target, e))
        error.__cause__ = e
        return walk.Fail(error)
    return walk.Signal.CONTINUE


def _walk(stream, visitor):
    # Write failures travel through the walker as the WalkError's cause.
    # Callers see them as the ExtractionError they are.
    try:
        walk.walk(stream, visitor)
    except walk.WalkError as e:
        if isinstance(e.__cause__, ExtractionError):
            raise e.__cause__
        raise


def _escapes(root, target, name, summary):
    if not is_contained(root, target):
        LOG.warning('Skipping path outside target directory: %s' % name)
    elif not resolves_inside(root, target):
        LOG.warning('Skipping %s, a symlink in its path leads outside the '
                    'target directory' % name)
    else:
        return False
    summary.skipped += 1
    return True


def extract_all(stream, output_dir):
    """Unpack every artifact in a tar stream below output_dir.

    Entries whose path would resolve outside output_dir are skipped with a
    warning, as are hard links that cannot be created or copied and
    special files. Any other write failure aborts the extraction.

    Returns:
        An ExtractSummary.

    Raises:
        InvalidInputError: If stream or output_dir are missing.
        ExtractionError: If an entry or a directory permission could not
            be written.
        walk.WalkError: If the stream is invalid.
    """
    if stream is None:
        raise InvalidInputError('No input stream provided')
    if not output_dir:
        raise InvalidInputError('No output directory provided')

    start = time.monotonic()
    summary = ExtractSummary()

    LOG.debug('Creating output directory %s' % output_dir)
    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as e:
        raise ExtractionError('Failed creating output directory %s: %s'
                              % (output_dir, e)) from e

    placer = _Placer(output_dir, summary)

    def visitor(reader, entry):
        target = os.path.join(output_dir, entry.name.lstrip('/'))
        if _escapes(output_dir, target, entry.name, summary):
            return walk.Signal.CONTINUE
        return _visit_safely(placer, reader, entry, target)

    _walk(stream, visitor)
    placer.finish()

    summary.elapsed = time.monotonic() - start
    return summary


def _output_is_directory(output):
    return (os.path.isdir(output) or output.endswith('/') or
            output.endswith(os.sep))


def extract_selected(stream, selectors, output):
    """Copy the artifacts matched by selectors out of a tar stream.

    If output is an existing directory, or ends with a path separator,
    each match is written under it using only its basename. Otherwise the
    match is written to output itself. The walk stops as soon as every
    selector has matched at least once.

    Finding only some of the selectors is not an error: the summary's
    selectors_found is lower than selectors_requested and a warning is
    logged.
    """
    if stream is None:
        raise InvalidInputError('No input stream provided')
    if not selectors:
        raise InvalidInputError('No artifacts provided')
    if not output:
        raise InvalidInputError('No output provided')
    for selector in selectors:
        if not selector:
            raise InvalidInputError('Empty artifact selector provided')

    start = time.monotonic()
    summary = ExtractSummary()
    wanted = set(selectors)
    summary.selectors_requested = len(wanted)
    found = set()

    as_directory = _output_is_directory(output)
    if as_directory:
        link_root = output
        try:
            os.makedirs(output, exist_ok=True)
        except OSError as e:
            raise ExtractionError('Failed creating output directory %s: %s'
                                  % (output, e)) from e
    else:
        link_root = os.path.dirname(output) or '.'

    placer = _Placer(link_root, summary)

    def visitor(reader, entry):
        hits = [s for s in wanted if match.matches(entry.name, s)]
        if not hits:
            return walk.Signal.CONTINUE

        LOG.debug('Found artifact %s (matches %s)'
                  % (entry.name, ', '.join(sorted(hits))))
        found.update(hits)

        if as_directory:
            target = os.path.join(output, posixpath.basename(entry.name))
            if _escapes(output, target, entry.name, summary):
                return walk.Signal.CONTINUE
        else:
            target = output

        signal = _visit_safely(placer, reader, entry, target)
        if isinstance(signal, walk.Fail):
            return signal
        LOG.info('Copied %s' % entry.name)

        if found == wanted:
            LOG.debug('All artifacts found, stopping search')
            return walk.Signal.STOP
        return walk.Signal.CONTINUE

    _walk(stream, visitor)
    placer.finish()

    summary.selectors_found = len(found)
    summary.elapsed = time.monotonic() - start
    if summary.selectors_found < summary.selectors_requested:
        LOG.warning('Only found %d of %d requested artifacts: missing %s'
                    % (summary.selectors_found, summary.selectors_requested,
                       ', '.join(sorted(wanted - found))))
    return summary
