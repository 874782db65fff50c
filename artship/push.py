# Push images to a Docker/OCI registry via the Docker Registry HTTP API V2.
#
# Docker Registry API documentation:
# https://docs.docker.com/registry/spec/api/
#
# OCI Distribution Spec:
# https://github.com/opencontainers/distribution-spec/blob/main/spec.md
#
# The push process:
# 1. For each layer blob:
#    a. Check if blob exists: HEAD /v2/<name>/blobs/<digest>
#    b. If not, initiate upload: POST /v2/<name>/blobs/uploads/
#    c. Upload blob: PUT <location>?digest=<digest>
# 2. Upload config blob (same as layer)
# 3. Push manifest: PUT /v2/<name>/manifests/<tag>

from collections import namedtuple
import datetime
import hashlib
import io
import json
import logging
import os
import stat
import tarfile
import tempfile

from artship import compression
from artship import constants
from artship import registry
from artship import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

PUSH_OK_CODES = (200, 201, 202)
CHUNK_SIZE = 1024 * 1024


MirrorResult = namedtuple('MirrorResult',
                          ['source_image', 'dest_image', 'digest', 'size'])


def _hash_file(f):
    """Return (digest, size) of a seekable file, leaving it at offset 0."""
    f.seek(0)
    h = hashlib.sha256()
    size = 0
    while True:
        d = f.read(CHUNK_SIZE)
        if not d:
            break
        h.update(d)
        size += len(d)
    f.seek(0)
    return 'sha256:%s' % h.hexdigest(), size


class RegistryWriter(object):
    """Pushes images to a Docker/OCI registry.

    Blobs are uploaded monolithically, then a manifest referencing them is
    pushed to make the image available under the reference's tag (or
    digest).
    """

    def __init__(self, reference, secure=True, username=None, password=None,
                 token=None):
        """Initialize the registry writer.

        Args:
            reference: A reference.Reference naming the destination.
            secure: If True, use HTTPS (default). If False, use HTTP.
            username: Username for authentication (optional).
            password: Password for authentication (optional).
            token: A bearer token for authentication (optional).
        """
        self.reference = reference
        self.session = registry.RegistrySession(
            reference.registry, reference.repository, secure=secure,
            username=username, password=password, token=token,
            actions='pull,push')

        self._config_digest = None
        self._config_size = None
        self._config_media_type = None
        self._layers = []

    def blob_exists(self, digest):
        """Check if a blob already exists in the registry."""
        try:
            self.session.request('HEAD',
                                 self.session.url('blobs/%s' % digest))
        except util.APIException as e:
            if e.args[3] == 404:
                return False
            raise
        return True

    def upload_blob(self, digest, data, size, check_exists=True):
        """Upload a blob to the registry.

        Args:
            digest: The sha256 digest of the blob (e.g., 'sha256:abc123...').
            data: File-like object containing the blob data.
            size: Size of the blob in bytes.
        """
        if check_exists and self.blob_exists(digest):
            LOG.info('Blob %s already exists, skipping upload' % digest[:19])
            return

        LOG.info('Uploading blob %s (%s)'
                 % (digest[:19], util.format_size(size)))

        r = self.session.request('POST', self.session.url('blobs/uploads/'),
                                 ok_codes=PUSH_OK_CODES)
        location = r.headers.get('Location')
        if not location:
            raise registry.RegistryError(
                'No Location header in upload response')

        if not location.startswith('http'):
            location = '%s://%s%s' % (self.session.moniker,
                                      self.reference.registry, location)

        if '?' in location:
            upload_url = '%s&digest=%s' % (location, digest)
        else:
            upload_url = '%s?digest=%s' % (location, digest)

        data.seek(0)
        self.session.request(
            'PUT', upload_url,
            headers={'Content-Type': 'application/octet-stream',
                     'Content-Length': str(size)},
            data=data, ok_codes=PUSH_OK_CODES)
        LOG.debug('Blob %s uploaded' % digest[:19])

    def add_config(self, config_data,
                   media_type=constants.MEDIA_TYPE_OCI_CONFIG):
        """Upload the image config, given as bytes."""
        self._config_digest = registry.sha256_of(config_data)
        self._config_size = len(config_data)
        self._config_media_type = media_type
        self.upload_blob(self._config_digest, io.BytesIO(config_data),
                         self._config_size)

    def add_layer(self, data, media_type=constants.MEDIA_TYPE_OCI_LAYER_GZIP,
                  annotations=None):
        """Upload an already compressed layer from a seekable file object."""
        digest, size = _hash_file(data)
        self.upload_blob(digest, data, size)

        layer = {
            'mediaType': media_type,
            'size': size,
            'digest': digest,
        }
        if annotations:
            layer['annotations'] = annotations
        self._layers.append(layer)
        return digest

    def push_manifest(self, manifest_data, media_type):
        """Push raw manifest bytes under the reference's tag or digest.

        Returns:
            The manifest digest.
        """
        LOG.info('Pushing manifest for %s' % (self.reference,))
        r = self.session.request(
            'PUT', self.session.url('manifests/%s'
                                    % self.reference.identifier),
            headers={'Content-Type': media_type},
            data=manifest_data, ok_codes=PUSH_OK_CODES)
        return (r.headers.get('Docker-Content-Digest') or
                registry.sha256_of(manifest_data))

    def finalize(self):
        """Push an OCI manifest for the config and layers added so far."""
        if not self._config_digest:
            raise registry.RegistryError('No config file was processed')

        manifest = {
            'schemaVersion': 2,
            'mediaType': constants.MEDIA_TYPE_OCI_MANIFEST,
            'config': {
                'mediaType': self._config_media_type,
                'size': self._config_size,
                'digest': self._config_digest
            },
            'layers': self._layers
        }
        manifest_json = json.dumps(manifest, separators=(',', ':'))
        digest = self.push_manifest(manifest_json.encode('utf-8'),
                                    constants.MEDIA_TYPE_OCI_MANIFEST)

        LOG.info('Image pushed successfully: %s' % (self.reference,))
        return digest


def _skip_special(path, st):
    if stat.S_ISSOCK(st.st_mode) or stat.S_ISCHR(st.st_mode) or \
            stat.S_ISBLK(st.st_mode) or stat.S_ISFIFO(st.st_mode):
        LOG.debug('Skipping special file: %s (mode: %s)'
                  % (path, stat.filemode(st.st_mode)))
        return True
    return False


def _add_path(tar, path, arcname):
    st = os.lstat(path)
    if _skip_special(path, st):
        return

    ti = tar.gettarinfo(path, arcname=arcname)
    if ti.isreg():
        with open(path, 'rb') as f:
            tar.addfile(ti, f)
        LOG.debug('Added file: %s' % arcname)
    else:
        tar.addfile(ti)
        LOG.debug('Added %s: %s'
                  % ('directory' if ti.isdir() else 'link', arcname))


def write_layer_tar(source_path, fileobj):
    """Write a local file or directory tree as an uncompressed tar.

    A directory's contents are stored relative to the directory itself. A
    single file is stored under its base name. Sockets, devices and FIFOs
    are skipped.
    """
    with tarfile.open(fileobj=fileobj, mode='w',
                      format=tarfile.PAX_FORMAT) as tar:
        if not os.path.isdir(source_path):
            _add_path(tar, source_path, os.path.basename(source_path))
            return

        for root, dirs, files in os.walk(source_path):
            dirs.sort()
            for name in dirs + sorted(files):
                path = os.path.join(root, name)
                arcname = os.path.relpath(path, source_path).replace(
                    os.sep, '/')
                _add_path(tar, path, arcname)


def validate_pack_source(source_path):
    if not source_path:
        raise util.InvalidInputError('Source path is required')
    try:
        st = os.stat(source_path)
    except FileNotFoundError:
        raise util.InvalidInputError(
            "Source path '%s' does not exist" % source_path)
    except OSError as e:
        raise util.InvalidInputError(
            "Cannot stat the source path '%s': %s" % (source_path, e))

    if stat.S_ISSOCK(st.st_mode):
        raise util.InvalidInputError(
            "Source path '%s' is a socket, which cannot be packed"
            % source_path)


def image_labels(source_path, os_name, architecture, now):
    return {
        'org.opencontainers.image.created': now.strftime('%Y-%m-%dT%H:%M:%SZ'),
        'org.opencontainers.image.source': 'artship',
        'org.opencontainers.image.title': 'Packed by artship',
        'org.opencontainers.image.description':
            'OCI image created from %s' % source_path,
        'org.opencontainers.image.vendor': 'artship',
        'org.opencontainers.image.version': 'latest',
        'artship.source.path': source_path,
        'artship.created.timestamp': '%d' % now.timestamp(),
        'artship.platform.os': os_name,
        'artship.platform.arch': architecture,
    }


def pack(reference, source_path, secure=True, username=None, password=None,
         token=None, os_name='linux', architecture='amd64', temp_dir=None):
    """Pack a local file or directory into a one layer image and push it.

    Returns:
        The digest of the pushed manifest.
    """
    validate_pack_source(source_path)
    now = datetime.datetime.now(datetime.timezone.utc)

    LOG.debug('Creating OCI image from source: %s' % source_path)
    with tempfile.TemporaryFile(dir=temp_dir) as layer_tar, \
            tempfile.TemporaryFile(dir=temp_dir) as layer_gz:
        write_layer_tar(source_path, layer_tar)
        diff_id, tar_size = _hash_file(layer_tar)
        compression.gzip_file(layer_tar, layer_gz, level=1)
        LOG.debug('Layer is %s uncompressed' % util.format_size(tar_size))

        created = now.strftime('%Y-%m-%dT%H:%M:%SZ')
        config = {
            'architecture': architecture,
            'os': os_name,
            'created': created,
            'config': {
                'Labels': image_labels(source_path, os_name, architecture,
                                       now),
            },
            'rootfs': {
                'type': 'layers',
                'diff_ids': [diff_id],
            },
            'history': [{
                'created': created,
                'created_by': 'artship pack %s' % source_path,
            }],
        }

        writer = RegistryWriter(reference, secure=secure, username=username,
                                password=password, token=token)
        LOG.info('Pushing layer to the registry')
        writer.add_config(json.dumps(config, sort_keys=True).encode('utf-8'))
        writer.add_layer(layer_gz)
        return writer.finalize()


def mirror(source, destination, secure=True, source_credentials=None,
           dest_credentials=None, os_name='linux', architecture='amd64',
           variant='', temp_dir=None):
    """Copy an image between references without recompressing it.

    The manifest for the requested platform is copied byte for byte so the
    destination has the same digest as the source.

    Args:
        source, destination: reference.Reference objects.
        source_credentials, dest_credentials: dicts with optional
            'username', 'password' and 'token' keys.

    Returns:
        A MirrorResult.
    """
    source_credentials = source_credentials or {}
    dest_credentials = dest_credentials or {}

    LOG.info('Fetching source image: %s' % (source,))
    image = registry.Image(source, os=os_name, architecture=architecture,
                           variant=variant, secure=secure,
                           temp_dir=temp_dir, **source_credentials)
    manifest = image.manifest()
    manifest_data, media_type, digest = image.raw_manifest()

    LOG.info('Pushing image to destination: %s' % (destination,))
    writer = RegistryWriter(destination, secure=secure, **dest_credentials)

    size = 0
    for descriptor in [manifest['config']] + manifest.get('layers', []):
        blob_digest = descriptor['digest']
        size += descriptor.get('size', 0)
        if writer.blob_exists(blob_digest):
            LOG.info('Blob %s already exists, skipping copy'
                     % blob_digest[:19])
            continue

        with tempfile.TemporaryFile(dir=temp_dir) as blob:
            blob_size = image.download_blob(blob_digest, blob)
            writer.upload_blob(blob_digest, blob, blob_size,
                               check_exists=False)

    pushed = writer.push_manifest(manifest_data, media_type)
    if pushed != digest:
        LOG.warning('Destination reports digest %s, source was %s'
                    % (pushed, digest))

    LOG.info('Successfully mirrored image')
    LOG.debug('Digest: %s' % digest)
    return MirrorResult(str(source), str(destination), digest, size)
