"""Media types of the manifests and blobs handled by imagetest."""

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"

DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"

MANIFEST_TYPES = (OCI_MANIFEST, DOCKER_MANIFEST)
INDEX_TYPES = (OCI_INDEX, DOCKER_MANIFEST_LIST)

# sent as `Accept` header when fetching manifests
ACCEPT = ", ".join(MANIFEST_TYPES + INDEX_TYPES)


def is_index(media_type: str) -> bool:
    """Checks if the media type is an image index or a manifest list."""
    return media_type in INDEX_TYPES


def is_image(media_type: str) -> bool:
    """Checks if the media type is a single image manifest."""
    return media_type in MANIFEST_TYPES


def is_docker(media_type: str) -> bool:
    """Checks if the media type belongs to the Docker v2 schema."""
    return media_type in (DOCKER_MANIFEST, DOCKER_MANIFEST_LIST)


def layer_type(manifest_type: str) -> str:
    """Gets the gzip layer media type matching a manifest media type."""
    return DOCKER_LAYER if is_docker(manifest_type) else OCI_LAYER
