"""High level operations on remote images.

A Client ties the registry code, which turns an image reference into a tar
stream, to the artifact code, which only ever sees tar streams. Every
operation validates its arguments before touching the network.
"""

import contextlib
import logging
import os
import shutil

from artship import catalog
from artship import diff
from artship import extract
from artship import locate
from artship import push
from artship import reference
from artship import registry
from artship.util import CountingReader, InvalidInputError, format_size


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class Config(object):
    """Per invocation settings shared by every Client operation."""

    def __init__(self, username=None, password=None, token=None,
                 insecure=False, os='linux', architecture='amd64',
                 variant='', temp_dir=None, max_workers=4):
        self.username = username
        self.password = password
        self.token = token
        self.insecure = insecure
        self.os = os
        self.architecture = architecture
        self.variant = variant
        self.temp_dir = temp_dir
        self.max_workers = max_workers

    @property
    def secure(self):
        return not self.insecure

    def credentials(self):
        return {
            'username': self.username,
            'password': self.password,
            'token': self.token,
        }


def _require(value, message):
    if not value:
        raise InvalidInputError(message)


class Client(object):
    def __init__(self, config=None):
        self.config = config or Config()

    def _image(self, image_ref):
        ref = reference.parse_reference(image_ref)
        return registry.Image(
            ref, os=self.config.os, architecture=self.config.architecture,
            variant=self.config.variant, secure=self.config.secure,
            max_workers=self.config.max_workers,
            temp_dir=self.config.temp_dir, **self.config.credentials())

    @contextlib.contextmanager
    def _filesystem(self, image_ref, layer=None, label='Read'):
        """Yield a tar stream of the image filesystem, or of one layer."""
        image = self._image(image_ref)
        LOG.debug('Walking the image %s...' % (image.reference,))
        if layer:
            f = image.layer(layer)
        else:
            f = image.flattened_filesystem()

        reader = CountingReader(f, label=label)
        try:
            yield reader
        finally:
            reader.close()
            LOG.debug('%s %s of %s' % (label, format_size(reader.bytes_read),
                                       image.reference))

    def list(self, image_ref, type_filter=None, layer=None):
        _require(image_ref, 'No image ref provided')
        with self._filesystem(image_ref, layer=layer) as stream:
            return catalog.list_artifacts(stream, type_filter=type_filter)

    def info(self, image_ref, artifact):
        _require(image_ref, 'No image ref provided')
        _require(artifact, 'No artifact provided')
        with self._filesystem(image_ref) as stream:
            return locate.find_first(stream, artifact)

    def has(self, image_ref, artifact):
        _require(image_ref, 'No image ref provided')
        _require(artifact, 'No artifact provided')
        with self._filesystem(image_ref) as stream:
            return locate.exists(stream, artifact)

    def cat(self, image_ref, artifact):
        _require(image_ref, 'No image ref provided')
        _require(artifact, 'No artifact provided')
        with self._filesystem(image_ref) as stream:
            return locate.read_first(stream, artifact)

    def copy(self, image_ref, artifacts, output):
        _require(image_ref, 'No image ref provided')
        _require(artifacts, 'No artifacts provided')
        _require(output, 'No output provided')
        with self._filesystem(image_ref, label='Scanned') as stream:
            return extract.extract_selected(stream, artifacts, output)

    def extract(self, image_ref, output_dir):
        _require(image_ref, 'No image ref provided')
        _require(output_dir, 'No output directory provided')
        LOG.info('Extracting %s to %s' % (image_ref, output_dir))
        with self._filesystem(image_ref, label='Extracted') as stream:
            return extract.extract_all(stream, output_dir)

    def export(self, image_ref, output_file):
        """Write the flattened filesystem tar to output_file.

        Returns:
            The number of bytes written.
        """
        _require(image_ref, 'No image ref provided')
        _require(output_file, 'No output file provided')

        parent = os.path.dirname(output_file)
        if parent:
            try:
                os.makedirs(parent, exist_ok=True)
            except OSError as e:
                raise extract.ExtractionError(
                    'Failed creating directory %s: %s' % (parent, e)) from e

        with self._filesystem(image_ref, label='Exported') as stream:
            try:
                with open(output_file, 'wb') as f:
                    shutil.copyfileobj(stream, f)
            except OSError as e:
                raise extract.ExtractionError(
                    'Failed writing %s: %s' % (output_file, e)) from e
            LOG.info('Exported %s to %s (%s)'
                     % (image_ref, output_file,
                        format_size(stream.bytes_read)))
            return stream.bytes_read

    def diff(self, source_ref, target_ref, include_unchanged=False):
        _require(source_ref, 'No source image ref provided')
        _require(target_ref, 'No target image ref provided')

        LOG.info('Scanning source image %s' % source_ref)
        with self._filesystem(source_ref) as stream:
            source = catalog.build_catalog(stream)

        LOG.info('Scanning target image %s' % target_ref)
        with self._filesystem(target_ref) as stream:
            target = catalog.build_catalog(stream)

        return diff.compare(source, target,
                            include_unchanged=include_unchanged,
                            source_ref=source_ref, target_ref=target_ref)

    def tags(self, repository):
        _require(repository, 'No repository provided')
        registry_host, repo = reference.parse_repository(repository)
        return registry.list_tags(registry_host, repo,
                                  secure=self.config.secure,
                                  **self.config.credentials())

    def meta(self, image_ref):
        _require(image_ref, 'No image ref provided')
        return self._image(image_ref).metadata()

    def mirror(self, source_ref, dest_ref, source_credentials=None,
               dest_credentials=None):
        """Copy an image between registries.

        Credentials default to the ones in the Config when a side has none
        of its own.
        """
        _require(source_ref, 'Source image reference is required')
        _require(dest_ref, 'Destination image reference is required')
        source = reference.parse_reference(source_ref)
        destination = reference.parse_reference(dest_ref)

        if not source_credentials or not any(source_credentials.values()):
            source_credentials = self.config.credentials()
        if not dest_credentials or not any(dest_credentials.values()):
            dest_credentials = self.config.credentials()

        return push.mirror(
            source, destination, secure=self.config.secure,
            source_credentials=source_credentials,
            dest_credentials=dest_credentials, os_name=self.config.os,
            architecture=self.config.architecture,
            variant=self.config.variant, temp_dir=self.config.temp_dir)

    def pack(self, image_ref, source_path):
        _require(image_ref, 'No image reference provided')
        push.validate_pack_source(source_path)
        ref = reference.parse_reference(image_ref)
        return push.pack(
            ref, source_path, secure=self.config.secure,
            os_name=self.config.os, architecture=self.config.architecture,
            temp_dir=self.config.temp_dir, **self.config.credentials())
