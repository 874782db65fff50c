import logging

from artship import catalog
from artship import match
from artship.util import ArtshipException, InvalidInputError
from artship import walk


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class NotFoundError(ArtshipException):
    """No artifact in the image matches the selector.

    This is not a failure of the tool, so callers usually report it with a
    neutral message rather than as an error.
    """
    pass


def _check_selector(selector):
    if not selector:
        raise InvalidInputError('No artifact provided')


def find_first(stream, selector):
    """Return the Artifact for the first entry matching selector.

    Raises:
        NotFoundError: If the stream ends without a match.
    """
    _check_selector(selector)
    found = []

    def visitor(_reader, entry):
        if match.matches(entry.name, selector):
            LOG.debug('Found matching artifact: %s' % entry.name)
            found.append(catalog.Artifact.from_entry(entry))
            return walk.Signal.STOP
        return walk.Signal.CONTINUE

    walk.walk(stream, visitor)
    if not found:
        raise NotFoundError('Artifact %s not found' % selector)
    return found[0]


def read_first(stream, selector):
    """Return the content of the first regular file matching selector.

    Directories, links and other non-file entries that match are passed
    over, so a selector naming only a directory raises NotFoundError.
    """
    _check_selector(selector)
    content = []

    def visitor(reader, entry):
        if entry.kind != walk.TypeKind.FILE:
            return walk.Signal.CONTINUE
        if not match.matches(entry.name, selector):
            return walk.Signal.CONTINUE

        LOG.debug('Found artifact: %s (size: %d bytes)'
                  % (entry.name, entry.size))
        try:
            content.append(reader.read())
        except OSError as e:
            return walk.Fail(e)
        return walk.Signal.STOP

    walk.walk(stream, visitor)
    if not content:
        raise NotFoundError('Artifact %s not found or not a regular file'
                            % selector)
    return content[0]


def exists(stream, selector):
    try:
        find_first(stream, selector)
    except NotFoundError:
        return False
    return True
