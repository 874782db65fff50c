"""Parsing of image references.

Reference formats understood:
    busybox                          -> registry-1.docker.io/library/busybox:latest
    nginx:1.25                       -> registry-1.docker.io/library/nginx:1.25
    myuser/app:v1                    -> registry-1.docker.io/myuser/app:v1
    ghcr.io/owner/repo:v1.0          -> ghcr.io/owner/repo:v1.0
    localhost:5000/app               -> localhost:5000/app:latest
    quay.io/org/app@sha256:abc...    -> pinned by digest
"""

from collections import namedtuple
import re

from artship import constants
from artship.util import ArtshipException, InvalidInputError


REPOSITORY_RE = re.compile(
    r'^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*'
    r'(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$')
TAG_RE = re.compile(r'^[\w][\w.-]{0,127}$')
DIGEST_RE = re.compile(r'^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-fA-F0-9]{32,}$')


class ReferenceParseError(ArtshipException):
    """Raised when an image reference cannot be parsed."""
    pass


class Reference(namedtuple('Reference',
                           ['registry', 'repository', 'tag', 'digest'])):
    __slots__ = ()

    @property
    def identifier(self):
        """The tag or digest used to address the manifest."""
        return self.digest or self.tag

    def __str__(self):
        if self.digest:
            return '%s/%s@%s' % (self.registry, self.repository, self.digest)
        return '%s/%s:%s' % (self.registry, self.repository, self.tag)


def _looks_like_registry(component):
    return ('.' in component or ':' in component or
            component == 'localhost')


def _split_registry(name):
    """Split 'host/path' into (registry, repository)."""
    if '/' in name:
        first, rest = name.split('/', 1)
        if _looks_like_registry(first):
            registry = first
            repository = rest
        else:
            registry = constants.DEFAULT_REGISTRY
            repository = name
    else:
        registry = constants.DEFAULT_REGISTRY
        repository = name

    if registry in constants.DOCKER_HUB_ALIASES:
        registry = constants.DEFAULT_REGISTRY
        if '/' not in repository:
            repository = 'library/%s' % repository

    return registry, repository


def parse_repository(repo_string):
    """Parse a repository name (no tag or digest) into (registry, path)."""
    if not repo_string:
        raise InvalidInputError('No repository provided')

    registry, repository = _split_registry(repo_string.strip())
    if not REPOSITORY_RE.match(repository):
        raise ReferenceParseError('Invalid repository name: %s' % repo_string)
    return registry, repository


def parse_reference(ref_string):
    """Parse an image reference into a Reference.

    Raises:
        InvalidInputError: If the reference is empty.
        ReferenceParseError: If the reference is malformed.
    """
    if not ref_string:
        raise InvalidInputError('No image ref provided')

    name = ref_string.strip()
    digest = None
    if '@' in name:
        name, digest = name.split('@', 1)
        if not DIGEST_RE.match(digest):
            raise ReferenceParseError('Invalid digest in reference: %s'
                                      % ref_string)

    # A colon after the last slash separates the tag. Colons before it
    # belong to a registry port.
    tag = None
    last_slash = name.rfind('/')
    last_colon = name.rfind(':')
    if last_colon > last_slash:
        tag = name[last_colon + 1:]
        name = name[:last_colon]
        if not TAG_RE.match(tag):
            raise ReferenceParseError('Invalid tag in reference: %s'
                                      % ref_string)

    if not name:
        raise ReferenceParseError('Missing repository in reference: %s'
                                  % ref_string)

    registry, repository = _split_registry(name)
    if not REPOSITORY_RE.match(repository):
        raise ReferenceParseError('Invalid repository in reference: %s'
                                  % ref_string)

    if not tag and not digest:
        tag = constants.DEFAULT_TAG

    return Reference(registry=registry, repository=repository, tag=tag,
                     digest=digest)
