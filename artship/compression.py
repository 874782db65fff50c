"""Layer blob compression handling.

Registries serve layers gzip or zstd compressed (and occasionally
uncompressed). The walker wants plain tar, so blobs are decompressed chunk
by chunk as they download. Layers we push are gzip compressed.
"""

import gzip
import shutil
import zlib

import zstandard as zstd

from artship import constants


GZIP_MAGIC = b'\x1f\x8b'
ZSTD_MAGIC = b'\x28\xb5\x2f\xfd'


def detect_compression(data):
    """Detect compression format from the leading bytes of a blob."""
    magic = data[:4]
    if len(magic) < 2:
        return constants.COMPRESSION_UNKNOWN
    if magic[:2] == GZIP_MAGIC:
        return constants.COMPRESSION_GZIP
    if magic == ZSTD_MAGIC:
        return constants.COMPRESSION_ZSTD
    return constants.COMPRESSION_NONE


def detect_compression_from_media_type(media_type):
    """Detect compression format from an OCI/Docker layer media type.

    Returns:
        One of COMPRESSION_GZIP, COMPRESSION_ZSTD, COMPRESSION_NONE,
        or COMPRESSION_UNKNOWN.
    """
    if media_type is None:
        return constants.COMPRESSION_UNKNOWN

    if media_type in (constants.MEDIA_TYPE_DOCKER_LAYER_GZIP,
                      constants.MEDIA_TYPE_OCI_LAYER_GZIP):
        return constants.COMPRESSION_GZIP
    if media_type in (constants.MEDIA_TYPE_DOCKER_LAYER_ZSTD,
                      constants.MEDIA_TYPE_OCI_LAYER_ZSTD):
        return constants.COMPRESSION_ZSTD
    if media_type == constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED:
        return constants.COMPRESSION_NONE

    # Foreign layers and vendor types usually still follow the suffix
    # conventions
    if media_type.endswith('+gzip') or media_type.endswith('.gzip'):
        return constants.COMPRESSION_GZIP
    if media_type.endswith('+zstd') or media_type.endswith('.zstd'):
        return constants.COMPRESSION_ZSTD
    if media_type.endswith('.tar') and '+' not in media_type:
        return constants.COMPRESSION_NONE

    return constants.COMPRESSION_UNKNOWN


class StreamingDecompressor:
    """Decompresses a layer blob incrementally as chunks arrive.

    COMPRESSION_UNKNOWN is accepted: the format is then sniffed from the
    first chunk.
    """

    def __init__(self, compression_type):
        if compression_type not in (constants.COMPRESSION_GZIP,
                                    constants.COMPRESSION_ZSTD,
                                    constants.COMPRESSION_NONE,
                                    constants.COMPRESSION_UNKNOWN):
            raise ValueError(
                'Unsupported compression type: %s' % compression_type)
        self.compression_type = compression_type
        self._decompressor = None
        if compression_type != constants.COMPRESSION_UNKNOWN:
            self._setup(compression_type)

    def _setup(self, compression_type):
        self.compression_type = compression_type
        if compression_type == constants.COMPRESSION_GZIP:
            # 16 + MAX_WBITS expects a gzip header
            self._decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
        elif compression_type == constants.COMPRESSION_ZSTD:
            self._decompressor = zstd.ZstdDecompressor().decompressobj()

    def decompress(self, chunk):
        if self.compression_type == constants.COMPRESSION_UNKNOWN:
            if not chunk:
                return b''
            self._setup(detect_compression(chunk))

        if self._decompressor is None:
            return chunk
        return self._decompressor.decompress(chunk)

    def flush(self):
        if self.compression_type == constants.COMPRESSION_GZIP:
            return self._decompressor.flush()
        # zstd decompressobj has nothing buffered to flush
        return b''


def gzip_file(source, destination, level=6):
    """Gzip compress one file-like object into another."""
    with gzip.GzipFile(fileobj=destination, mode='wb', compresslevel=level,
                       mtime=0) as gz:
        shutil.copyfileobj(source, gz)
