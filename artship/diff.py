"""Filesystem differences between two image catalogs.

Comparison is by path membership, size and permission bits only. File
contents are never hashed, so a file rewritten with the same size and mode
is reported as unchanged.
"""

import json
import logging

import click

from artship import constants
from artship.util import InvalidInputError, format_size


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

RULE = '─' * 61
ARROW = '→'

STATUS_STYLES = {
    constants.DIFF_ADDED: ('+ ', 'green'),
    constants.DIFF_REMOVED: ('- ', 'red'),
    constants.DIFF_MODIFIED: ('~ ', 'yellow'),
    constants.DIFF_UNCHANGED: ('  ', 'white'),
}


class DiffEntry(object):
    def __init__(self, path, status, kind, old_size=None, new_size=None,
                 old_mode=None, new_mode=None):
        self.path = path
        self.status = status
        self.kind = kind
        self.old_size = old_size
        self.new_size = new_size
        self.old_mode = old_mode
        self.new_mode = new_mode

    def __repr__(self):
        return 'DiffEntry(%r, %r)' % (self.path, self.status)

    def to_dict(self):
        d = {
            'path': self.path,
            'status': self.status,
            'type': self.kind.value,
        }
        for key in ('old_size', 'new_size'):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        for key in ('old_mode', 'new_mode'):
            value = getattr(self, key)
            if value is not None:
                d[key] = '%04o' % value
        return d


class DiffResult(object):
    def __init__(self, source_ref, target_ref, added, removed, modified,
                 unchanged=None):
        self.source_ref = source_ref
        self.target_ref = target_ref
        self.added = added
        self.removed = removed
        self.modified = modified
        self.unchanged = unchanged

    @property
    def total_added(self):
        return len(self.added)

    @property
    def total_removed(self):
        return len(self.removed)

    @property
    def total_changed(self):
        return len(self.modified)

    def to_dict(self):
        d = {
            'source_image': self.source_ref,
            'target_image': self.target_ref,
            'added': [e.to_dict() for e in self.added],
            'removed': [e.to_dict() for e in self.removed],
            'modified': [e.to_dict() for e in self.modified],
            'total_added': self.total_added,
            'total_removed': self.total_removed,
            'total_changed': self.total_changed,
        }
        if self.unchanged is not None:
            d['unchanged'] = [e.to_dict() for e in self.unchanged]
        return d

    def to_json(self):
        return json.dumps(self.to_dict(), indent=4, sort_keys=True)

    def render(self, color=True, show_unchanged=False):
        """Return a human readable report, optionally with ANSI colours."""
        def style(text, fg=None, bold=False):
            if not color:
                return text
            return click.style(text, fg=fg, bold=bold)

        def line(entry, details):
            symbol, fg = STATUS_STYLES[entry.status]
            out = style(symbol, fg=fg) + style(entry.path, fg=fg)
            if details:
                out += ' ' + style(details, fg='white')
            return out

        out = ['',
               style('Comparing %s %s %s'
                     % (self.source_ref, ARROW, self.target_ref),
                     fg='blue', bold=True),
               style(RULE, fg='white'),
               '',
               style('+ Added:    %d' % self.total_added, fg='green', bold=True),
               style('- Removed:  %d' % self.total_removed, fg='red', bold=True),
               style('~ Modified: %d' % self.total_changed, fg='yellow',
                     bold=True),
               '',
               style(RULE, fg='white'),
               '']

        if self.added:
            out.append(style('Added:', fg='green', bold=True))
            for e in self.added:
                out.append(line(e, '(%s, %s)'
                                % (e.kind.value, format_size(e.new_size))))
            out.append('')

        if self.removed:
            out.append(style('Removed:', fg='red', bold=True))
            for e in self.removed:
                out.append(line(e, '(%s, %s)'
                                % (e.kind.value, format_size(e.old_size))))
            out.append('')

        if self.modified:
            out.append(style('Modified:', fg='yellow', bold=True))
            for e in self.modified:
                changes = []
                if e.old_size != e.new_size:
                    changes.append('%s %s %s' % (format_size(e.old_size), ARROW,
                                                 format_size(e.new_size)))
                if e.old_mode != e.new_mode:
                    changes.append('mode: %04o %s %04o'
                                   % (e.old_mode, ARROW, e.new_mode))
                out.append(line(e, '(%s)' % ', '.join(changes)))
            out.append('')

        if show_unchanged and self.unchanged:
            out.append(style('Unchanged: %d' % len(self.unchanged),
                             fg='white'))
            for e in self.unchanged:
                out.append(line(e, '(%s)' % format_size(e.new_size)))
            out.append('')

        return '\n'.join(out)


def _by_path(entry):
    return entry.path


def compare(source, target, include_unchanged=False, source_ref='',
            target_ref=''):
    """Compare two catalogs (dicts of path -> catalog.Artifact).

    Args:
        source: The catalog being compared from.
        target: The catalog being compared to.
        include_unchanged: Also record paths whose size and mode match.
        source_ref: Label for the source in reports.
        target_ref: Label for the target in reports.

    Returns:
        A DiffResult whose lists are each sorted by path.
    """
    added = []
    removed = []
    modified = []
    unchanged = [] if include_unchanged else None

    for path, old in source.items():
        new = target.get(path)
        if new is None:
            removed.append(DiffEntry(
                path, constants.DIFF_REMOVED, old.kind,
                old_size=old.size, old_mode=old.mode))
        elif old.size != new.size or old.mode != new.mode:
            modified.append(DiffEntry(
                path, constants.DIFF_MODIFIED, new.kind,
                old_size=old.size, new_size=new.size,
                old_mode=old.mode, new_mode=new.mode))
        elif include_unchanged:
            unchanged.append(DiffEntry(
                path, constants.DIFF_UNCHANGED, new.kind,
                old_size=old.size, new_size=new.size,
                old_mode=old.mode, new_mode=new.mode))

    for path, new in target.items():
        if path not in source:
            added.append(DiffEntry(
                path, constants.DIFF_ADDED, new.kind,
                new_size=new.size, new_mode=new.mode))

    added.sort(key=_by_path)
    removed.sort(key=_by_path)
    modified.sort(key=_by_path)
    if unchanged is not None:
        unchanged.sort(key=_by_path)

    LOG.debug('Compared %d source paths with %d target paths'
              % (len(source), len(target)))
    return DiffResult(source_ref, target_ref, added, removed, modified,
                      unchanged=unchanged)


def filter_result(result, status):
    """Narrow a DiffResult to one status without recomputing it."""
    if not status or status == constants.FILTER_ALL:
        return result
    if status not in constants.DIFF_FILTERS:
        raise InvalidInputError(
            'Unknown diff filter %s, expected one of %s'
            % (status, ', '.join(constants.DIFF_FILTERS)))

    return DiffResult(
        result.source_ref, result.target_ref,
        result.added if status == constants.DIFF_ADDED else [],
        result.removed if status == constants.DIFF_REMOVED else [],
        result.modified if status == constants.DIFF_MODIFIED else [],
        unchanged=None)
