# A small Docker/OCI registry client. It fetches images so that their
# filesystems can be inspected as tar streams.

# https://docs.docker.com/registry/spec/manifest-v2-2/ documents the image
# manifest format, noting that the response format you get back varies based
# on what you have in your accept header for the request.

# https://github.com/opencontainers/image-spec/blob/main/media-types.md
# documents the OCI mime types, and layer.md in the same repository documents
# how whiteout files delete content from lower layers.

from concurrent.futures import ThreadPoolExecutor
import hashlib
import io
import json
import logging
import os
import posixpath
import re
from requests.exceptions import ChunkedEncodingError, ConnectionError
import tarfile
import tempfile
import threading
import time

from artship import compression
from artship import constants
from artship import util


# Retry configuration
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 2  # Exponential backoff: 2^attempt seconds

LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')

MANIFEST_ACCEPT = ','.join([
    constants.MEDIA_TYPE_DOCKER_MANIFEST_V2,
    constants.MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2,
    constants.MEDIA_TYPE_OCI_MANIFEST,
    constants.MEDIA_TYPE_OCI_INDEX,
])


class RegistryError(util.ArtshipException):
    pass


def always_fetch(digest):
    return True


def sha256_of(data):
    h = hashlib.sha256()
    h.update(data)
    return 'sha256:%s' % h.hexdigest()


class RegistrySession(object):
    """Makes authenticated requests against one repository of a registry.

    Registries answer unauthenticated requests with a 401 and a
    Www-Authenticate challenge. For Bearer challenges we fetch a token from
    the realm named in the challenge (using basic auth if we have
    credentials) and cache it. For Basic challenges we simply resend with
    the credentials.

    Thread-safe: uses _auth_lock to protect the cached token.
    """

    def __init__(self, registry, repository, secure=True, username=None,
                 password=None, token=None, actions='pull'):
        self.registry = registry
        self.repository = repository
        self.secure = secure
        self.username = username
        self.password = password
        self.actions = actions
        self.moniker = 'https' if secure else 'http'

        self._cached_auth = token
        self._basic = False
        self._auth_lock = threading.Lock()

    def url(self, path):
        return '%s://%s/v2/%s/%s' % (self.moniker, self.registry,
                                     self.repository, path)

    def _credentials(self):
        if self.username and self.password:
            return (self.username, self.password)
        return None

    def _authenticate(self, challenge):
        scheme = challenge.split(' ', 1)[0].lower()
        params = dict(CHALLENGE_PARAM_RE.findall(challenge))

        if scheme == 'basic':
            if not self._credentials():
                return False
            with self._auth_lock:
                self._basic = True
            return True

        if scheme != 'bearer' or 'realm' not in params:
            return False

        query = {'scope': 'repository:%s:%s' % (self.repository, self.actions)}
        if 'service' in params:
            query['service'] = params['service']
        auth_url = '%s?%s' % (
            params['realm'], '&'.join('%s=%s' % (k, v)
                                      for k, v in sorted(query.items())))
        r = util.request_url('GET', auth_url, auth=self._credentials())
        body = r.json()
        token = body.get('token') or body.get('access_token')
        if not token:
            raise RegistryError('Token endpoint %s returned no token'
                                % params['realm'])
        with self._auth_lock:
            self._cached_auth = token
        return True

    def _send(self, method, url, headers, data, stream, ok_codes):
        headers = dict(headers or {})
        auth = None
        with self._auth_lock:
            if self._basic:
                auth = self._credentials()
            elif self._cached_auth:
                headers['Authorization'] = 'Bearer %s' % self._cached_auth
        if hasattr(data, 'seek'):
            data.seek(0)
        return util.request_url(method, url, headers=headers, data=data,
                                stream=stream, auth=auth, ok_codes=ok_codes)

    def request(self, method, url, headers=None, data=None, stream=False,
                ok_codes=(200,)):
        try:
            return self._send(method, url, headers, data, stream, ok_codes)
        except util.UnauthorizedException as e:
            challenge = e.args[5].get('Www-Authenticate', '')
            if not self._authenticate(challenge):
                raise
        return self._send(method, url, headers, data, stream, ok_codes)


def _normalize_path(name):
    path = posixpath.normpath('/' + name).lstrip('/')
    return path if path != '.' else ''


def _ancestors(path):
    parent = posixpath.dirname(path)
    while True:
        yield parent
        if not parent:
            return
        parent = posixpath.dirname(parent)


def _hidden(path, deleted, opaque):
    if path in deleted:
        return True
    for parent in _ancestors(path):
        if parent in deleted or parent in opaque:
            return True
    return False


def flatten_layers(layers, output):
    """Merge layer tarballs into a single filesystem tarball.

    Layers are processed topmost first. The first version of a path seen
    wins, '.wh.<name>' entries hide that name in lower layers and
    '.wh..wh..opq' entries hide everything below their directory in lower
    layers. Whiteout entries are not copied to the output.

    Hard links are written after every other entry, since their target
    may come from a lower layer that is read later.

    Args:
        layers: File-like objects of uncompressed layer tarballs, ordered
            bottom to top as in the image manifest.
        output: A writable file-like object for the merged tarball.

    Returns:
        The number of entries written.
    """
    seen = set()
    deleted = set()
    opaque = set()
    hardlinks = []
    written = 0

    with tarfile.open(fileobj=output, mode='w',
                      format=tarfile.PAX_FORMAT) as out:
        for layer in reversed(layers):
            layer_deleted = set()
            layer_opaque = set()

            with tarfile.open(fileobj=layer, mode='r|') as tar:
                for member in tar:
                    path = _normalize_path(member.name)
                    dirname, filename = posixpath.split(path)

                    if filename == constants.OPAQUE_WHITEOUT:
                        layer_opaque.add(dirname)
                        continue
                    if filename.startswith(constants.WHITEOUT_PREFIX):
                        layer_deleted.add(posixpath.join(
                            dirname, filename[len(constants.WHITEOUT_PREFIX):]))
                        continue

                    if path in seen or _hidden(path, deleted, opaque):
                        continue
                    seen.add(path)

                    if member.islnk():
                        hardlinks.append(member)
                        continue
                    if member.isreg():
                        out.addfile(member, tar.extractfile(member))
                    else:
                        out.addfile(member)
                    written += 1

            # Whiteouts only apply to the layers below the one holding them
            deleted |= layer_deleted
            opaque |= layer_opaque

        for member in hardlinks:
            out.addfile(member)
            written += 1

    LOG.debug('Flattened %d layers into %d entries' % (len(layers), written))
    return written


class Image(object):
    def __init__(self, reference, os='linux', architecture='amd64',
                 variant='', secure=True, username=None, password=None,
                 token=None, max_workers=4, temp_dir=None):
        """A remote image.

        Args:
            reference: A reference.Reference naming the image.
            os, architecture, variant: The platform to pick from a
                multi-platform image.
            secure: If False, use HTTP instead of HTTPS.
            username, password, token: Optional registry credentials.
            max_workers: Number of parallel layer downloads.
            temp_dir: Directory for downloaded layers (default: system temp
                directory).
        """
        self.reference = reference
        self.os = os
        self.architecture = architecture
        self.variant = variant
        self.max_workers = max_workers
        self.temp_dir = temp_dir
        self.session = RegistrySession(
            reference.registry, reference.repository, secure=secure,
            username=username, password=password, token=token)

        self._manifest = None
        self._manifest_digest = None
        self._manifest_raw = None
        self._manifest_media_type = None
        self._config = None
        self._config_raw = None

    @property
    def image(self):
        """Return the repository name."""
        return self.reference.repository

    @property
    def tag(self):
        """Return the tag or digest."""
        return self.reference.identifier

    def _platform_matches(self, platform):
        return (platform.get('os') == self.os and
                platform.get('architecture') == self.architecture and
                platform.get('variant', '') == self.variant)

    def _get(self, identifier, accept):
        r = self.session.request(
            'GET', self.session.url('manifests/%s' % identifier),
            headers={'Accept': accept})
        media_type = r.headers.get('Content-Type', '').split(';')[0].strip()
        body = r.json()
        if media_type not in (constants.SINGLE_MANIFEST_TYPES +
                              constants.MANIFEST_LIST_TYPES):
            # Some registries send application/json, the document knows
            media_type = body.get('mediaType', media_type)
        digest = r.headers.get('Docker-Content-Digest') or sha256_of(r.content)
        return body, media_type, digest, r.content

    def manifest(self):
        """Return the image manifest for our platform, fetching it once."""
        if self._manifest is not None:
            return self._manifest

        LOG.info('Fetching manifest for %s' % (self.reference,))
        body, media_type, digest, raw = self._get(
            self.reference.identifier, MANIFEST_ACCEPT)

        if media_type in constants.MANIFEST_LIST_TYPES:
            chosen = None
            for m in body.get('manifests', []):
                platform = m.get('platform', {})
                LOG.debug('Found manifest for %s on %s %s'
                          % (platform.get('os'), platform.get('architecture'),
                             platform.get('variant', '')))
                if self._platform_matches(platform):
                    chosen = m
                    break

            if not chosen:
                raise RegistryError(
                    'Could not find a matching manifest for %s/%s%s'
                    % (self.os, self.architecture,
                       '/' + self.variant if self.variant else ''))

            LOG.info('Fetching matching manifest %s' % chosen['digest'])
            body, media_type, digest, raw = self._get(
                chosen['digest'], '%s,%s' % (
                    constants.MEDIA_TYPE_DOCKER_MANIFEST_V2,
                    constants.MEDIA_TYPE_OCI_MANIFEST))

        if media_type not in constants.SINGLE_MANIFEST_TYPES:
            raise RegistryError('Unknown manifest content type %s'
                                % media_type)

        self._manifest = body
        self._manifest_media_type = media_type
        self._manifest_digest = digest
        self._manifest_raw = raw
        return self._manifest

    def raw_manifest(self):
        """Return (bytes, media type, digest) of the platform manifest."""
        self.manifest()
        return (self._manifest_raw, self._manifest_media_type,
                self._manifest_digest)

    def download_blob(self, digest, destination):
        """Copy a blob, still compressed, into a writable file object.

        Returns:
            The number of bytes written.
        """
        r = self.session.request('GET', self.session.url('blobs/%s' % digest),
                                 stream=True)
        h = hashlib.sha256()
        size = 0
        for chunk in r.iter_content(8192):
            destination.write(chunk)
            h.update(chunk)
            size += len(chunk)

        if (digest.startswith('sha256:') and
                'sha256:%s' % h.hexdigest() != digest):
            raise RegistryError('Hash verification failed for blob %s (got %s)'
                                % (digest, h.hexdigest()))
        return size

    def config_blob(self):
        """Return the raw config blob bytes, verifying its digest."""
        if self._config_raw is not None:
            return self._config_raw

        config_digest = self.manifest()['config']['digest']
        LOG.info('Fetching config file')
        r = self.session.request('GET',
                                 self.session.url('blobs/%s' % config_digest))
        if (config_digest.startswith('sha256:') and
                sha256_of(r.content) != config_digest):
            raise RegistryError(
                'Hash verification failed for image config blob (%s vs %s)'
                % (config_digest, sha256_of(r.content)))
        self._config_raw = r.content
        return self._config_raw

    def config(self):
        if self._config is None:
            self._config = json.loads(self.config_blob())
        return self._config

    def _download_layer(self, layer):
        """Download a single layer, decompressed, to a temp file.

        This method is designed to be called from a ThreadPoolExecutor for
        parallel layer downloads. It handles decompression, hash
        verification, and retry logic.

        Args:
            layer: Layer descriptor dict with 'digest', 'size', 'mediaType'.

        Returns:
            The path of the temporary file holding the uncompressed layer.
        """
        digest = layer['digest']
        LOG.info('Fetching layer %s (%s)'
                 % (digest, util.format_size(layer.get('size', 0))))

        compression_type = compression.detect_compression_from_media_type(
            layer.get('mediaType'))
        LOG.debug('Layer compression: %s' % compression_type)

        last_exception = None
        for attempt in range(MAX_RETRIES + 1):
            tf = None
            try:
                r = self.session.request(
                    'GET', self.session.url('blobs/%s' % digest), stream=True)

                h = hashlib.sha256()
                d = compression.StreamingDecompressor(compression_type)
                tf = tempfile.NamedTemporaryFile(delete=False,
                                                 dir=self.temp_dir)
                LOG.debug('Temporary file for layer is %s' % tf.name)
                for chunk in r.iter_content(8192):
                    tf.write(d.decompress(chunk))
                    h.update(chunk)
                remaining = d.flush()
                if remaining:
                    tf.write(remaining)
                tf.close()

                if (digest.startswith('sha256:') and
                        'sha256:%s' % h.hexdigest() != digest):
                    os.unlink(tf.name)
                    raise RegistryError(
                        'Hash verification failed for layer %s (got %s)'
                        % (digest, h.hexdigest()))

                return tf.name

            except (ChunkedEncodingError, ConnectionError) as e:
                last_exception = e
                if tf is not None:
                    tf.close()
                    if os.path.exists(tf.name):
                        os.unlink(tf.name)

                if attempt < MAX_RETRIES:
                    wait_time = RETRY_BACKOFF_BASE ** attempt
                    LOG.warning(
                        'Layer download failed (attempt %d/%d): %s. '
                        'Retrying in %d seconds...'
                        % (attempt + 1, MAX_RETRIES + 1, e, wait_time))
                    time.sleep(wait_time)

        LOG.error('Layer download failed after %d attempts: %s'
                  % (MAX_RETRIES + 1, last_exception))
        raise RegistryError('Failed downloading layer %s: %s'
                            % (digest, last_exception)) from last_exception

    def _open_downloaded(self, path):
        # The file stays readable until closed even though it is unlinked
        f = open(path, 'rb')
        os.unlink(path)
        return f

    def fetch(self, fetch_callback=always_fetch):
        """Fetch the config and then each layer, in manifest order.

        Yields:
            Tuples of (element_type, name, data) where element_type is
            constants.CONFIG_FILE or constants.IMAGE_LAYER, name is the
            config filename or layer digest, and data is a file-like object
            (uncompressed for layers) or None if fetch_callback declined the
            layer.
        """
        manifest = self.manifest()
        config_digest = manifest['config']['digest']
        yield (constants.CONFIG_FILE,
               '%s.json' % config_digest.split(':')[-1],
               io.BytesIO(self.config_blob()))

        layers = manifest.get('layers', [])
        LOG.info('There are %d image layers' % len(layers))

        # Each entry is (digest, future_or_none) where None means skip
        layer_futures = []
        consumed = set()
        try:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                for layer in layers:
                    if not fetch_callback(layer['digest']):
                        LOG.info('Fetch callback says skip layer %s'
                                 % layer['digest'])
                        layer_futures.append((layer['digest'], None))
                    else:
                        layer_futures.append((
                            layer['digest'],
                            executor.submit(self._download_layer, layer)))

                try:
                    for digest, future in layer_futures:
                        if future is None:
                            yield (constants.IMAGE_LAYER, digest, None)
                            continue

                        consumed.add(digest)
                        with self._open_downloaded(future.result()) as f:
                            yield (constants.IMAGE_LAYER, digest, f)
                finally:
                    for _, future in layer_futures:
                        if future is not None:
                            future.cancel()
        finally:
            # Downloads that finished but were never handed to the caller
            for digest, future in layer_futures:
                if (future is None or digest in consumed or
                        future.cancelled() or future.exception()):
                    continue
                if os.path.exists(future.result()):
                    os.unlink(future.result())

        LOG.info('Done')

    def layer(self, digest):
        """Return one layer as an uncompressed tar file object.

        Args:
            digest: The layer digest, with or without the 'sha256:' prefix.
        """
        if not digest:
            raise util.InvalidInputError('No layer digest provided')
        if ':' not in digest:
            digest = 'sha256:%s' % digest

        for layer in self.manifest().get('layers', []):
            if layer['digest'] == digest:
                LOG.debug('Found matching layer: %s' % digest)
                return self._open_downloaded(self._download_layer(layer))

        raise RegistryError('Layer %s not found in %s'
                            % (digest, self.reference))

    def flattened_filesystem(self):
        """Return the image's merged filesystem as a tar file object.

        The caller owns the returned file and should close it. It is an
        anonymous temporary file, so nothing is left behind on disk.
        """
        layers = []
        try:
            for element_type, _, data in self.fetch():
                if element_type != constants.IMAGE_LAYER:
                    continue
                # fetch() closes each layer once we move on, so keep a
                # duplicate handle open until flattening is done.
                layers.append(os.fdopen(os.dup(data.fileno()), 'rb'))
                layers[-1].seek(0)

            merged = tempfile.TemporaryFile(dir=self.temp_dir)
            try:
                flatten_layers(layers, merged)
            except tarfile.TarError as e:
                merged.close()
                raise RegistryError('Failed flattening image %s: %s'
                                    % (self.reference, e)) from e
            merged.seek(0)
            return merged
        finally:
            for layer in layers:
                layer.close()

    def metadata(self):
        """Return a dict describing the image, for display."""
        manifest = self.manifest()
        config = self.config()
        image_config = config.get('config') or {}

        size = manifest['config'].get('size', 0)
        layers = []
        for layer in manifest.get('layers', []):
            size += layer.get('size', 0)
            entry = {
                'digest': layer['digest'],
                'size': util.format_size(layer.get('size', 0)),
                'mediaType': layer.get('mediaType', ''),
            }
            if layer.get('annotations'):
                entry['annotations'] = layer['annotations']
            layers.append(entry)

        meta = {
            'digest': self._manifest_digest,
            'mediaType': self._manifest_media_type,
            'architecture': config.get('architecture', ''),
            'os': config.get('os', ''),
            'size': util.format_size(size),
            'layers': layers,
        }
        optional = [
            ('author', config.get('author')),
            ('created', config.get('created')),
            ('env', image_config.get('Env')),
            ('cmd', image_config.get('Cmd')),
            ('entrypoint', image_config.get('Entrypoint')),
            ('workingDir', image_config.get('WorkingDir')),
            ('user', image_config.get('User')),
            ('labels', image_config.get('Labels')),
            ('annotations', manifest.get('annotations')),
        ]
        for key, value in optional:
            if value:
                meta[key] = value
        return meta


def list_tags(registry, repository, secure=True, username=None,
              password=None, token=None):
    """Return every tag of a repository, sorted."""
    session = RegistrySession(registry, repository, secure=secure,
                              username=username, password=password,
                              token=token)
    url = session.url('tags/list')
    tags = []
    while url:
        r = session.request('GET', url)
        tags.extend(r.json().get('tags') or [])

        # Registries paginate with an RFC 5988 Link header
        next_link = r.links.get('next', {}).get('url')
        if next_link and not next_link.startswith('http'):
            next_link = '%s://%s%s' % (session.moniker, registry, next_link)
        url = next_link

    LOG.debug('Found %d tags for %s/%s' % (len(tags), registry, repository))
    return sorted(tags)
