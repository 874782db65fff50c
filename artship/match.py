import posixpath


def matches(entry_path, selector):
    """Decide whether a tar entry path is selected by a user selector.

    A selector matches when any of the following holds, checked in order:

    - it is exactly equal to the entry path;
    - it equals the entry's basename, so a binary can be named without
      knowing its directory;
    - the entry lives below it, treating the selector as a directory.

    There is no globbing. Note that a selector such as 'bin' matches both
    a directory called 'bin' (via the prefix rule) and any file named 'bin'
    (via the basename rule). Callers searching for the first match get
    whichever comes first in the stream, so full paths should be preferred
    when the result needs to be deterministic.
    """
    if entry_path == selector:
        return True

    if posixpath.basename(entry_path) == selector:
        return True

    if entry_path.startswith(selector.rstrip('/') + '/'):
        return True

    return False
