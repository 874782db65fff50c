CONFIG_FILE = 'config_file'
IMAGE_LAYER = 'image_layer'

# Layer deletion markers, see
# https://github.com/opencontainers/image-spec/blob/main/layer.md#whiteouts
WHITEOUT_MARKER = '.wh.'
WHITEOUT_PREFIX = '.wh.'
OPAQUE_WHITEOUT = '.wh..wh..opq'

# Artifact type filter meaning "no filtering"
FILTER_ALL = 'all'

# Diff statuses
DIFF_ADDED = 'added'
DIFF_REMOVED = 'removed'
DIFF_MODIFIED = 'modified'
DIFF_UNCHANGED = 'unchanged'
DIFF_FILTERS = (DIFF_ADDED, DIFF_REMOVED, DIFF_MODIFIED, FILTER_ALL)

# Docker Hub is addressed by a different name than the one users type
DEFAULT_REGISTRY = 'registry-1.docker.io'
DOCKER_HUB_ALIASES = ('docker.io', 'index.docker.io', 'registry-1.docker.io')
DEFAULT_TAG = 'latest'

# Compression type constants
COMPRESSION_GZIP = 'gzip'
COMPRESSION_ZSTD = 'zstd'
COMPRESSION_NONE = 'none'
COMPRESSION_UNKNOWN = 'unknown'

# Docker manifest media types
MEDIA_TYPE_DOCKER_MANIFEST_V2 = \
    'application/vnd.docker.distribution.manifest.v2+json'
MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2 = \
    'application/vnd.docker.distribution.manifest.list.v2+json'

# Docker layer media types
MEDIA_TYPE_DOCKER_LAYER_GZIP = \
    'application/vnd.docker.image.rootfs.diff.tar.gzip'
MEDIA_TYPE_DOCKER_LAYER_ZSTD = \
    'application/vnd.docker.image.rootfs.diff.tar.zstd'

# OCI manifest media types
MEDIA_TYPE_OCI_MANIFEST = 'application/vnd.oci.image.manifest.v1+json'
MEDIA_TYPE_OCI_INDEX = 'application/vnd.oci.image.index.v1+json'
MEDIA_TYPE_OCI_CONFIG = 'application/vnd.oci.image.config.v1+json'

# OCI layer media types
MEDIA_TYPE_OCI_LAYER_GZIP = 'application/vnd.oci.image.layer.v1.tar+gzip'
MEDIA_TYPE_OCI_LAYER_ZSTD = 'application/vnd.oci.image.layer.v1.tar+zstd'
MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED = 'application/vnd.oci.image.layer.v1.tar'

SINGLE_MANIFEST_TYPES = (
    MEDIA_TYPE_DOCKER_MANIFEST_V2,
    MEDIA_TYPE_OCI_MANIFEST,
)
MANIFEST_LIST_TYPES = (
    MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2,
    MEDIA_TYPE_OCI_INDEX,
)
