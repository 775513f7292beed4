"""The entrypoint layers added to every test image.

The entrypoint wraps the test command: it normalizes the environment, handles
signals, writes the process log and, when requested, keeps a failing container
alive for inspection. Its content is opaque to imagetest, only the paths
below are relied upon.
"""
import threading
from pathlib import Path
from typing import Dict, List, Optional

from imagetest.bundler.image import load_image
from imagetest.bundler.layer import Layer, layer_from_file
from imagetest.core.errors import ImagetestError, InvalidInput
from imagetest.core.reference import parse_reference
from imagetest.registry import media
from imagetest.registry.client import RegistryClient
from imagetest.utils import log

ARCHITECTURES = ("amd64", "arm64")

BINARY_PATH = "/ko-app/entrypoint"
WRAPPER_PATH = "/var/run/ko/entrypoint-wrapper.sh"
DEFAULT_PROCESS_LOG_PATH = "/tmp/imagetest.log"

DEFAULT_ENTRYPOINT = [BINARY_PATH, "--process-log-path", DEFAULT_PROCESS_LOG_PATH, WRAPPER_PATH]
DEFAULT_HEALTHCHECK = [BINARY_PATH, "healthcheck"]

DEFAULT_WORK_DIR = "/imagetest"
DEFAULT_USER = "0:0"

# environment variables injected in the test containers
ENV_IMAGES = "IMAGES"
ENV_DRIVER = "IMAGETEST_DRIVER"
ENV_PAUSE_ON_ERROR = "IMAGETEST_PAUSE_ON_ERROR"
ENV_REGISTRY = "IMAGETEST_REGISTRY"
ENV_REPO = "IMAGETEST_REPO"
ENV_LOCAL_REGISTRY = "IMAGETEST_LOCAL_REGISTRY"
ENV_LOCAL_REGISTRY_HOSTNAME = "IMAGETEST_LOCAL_REGISTRY_HOSTNAME"
ENV_LOCAL_REGISTRY_PORT = "IMAGETEST_LOCAL_REGISTRY_PORT"

EntrypointLayers = Dict[str, List[Layer]]


def _from_image(client: RegistryClient, raw: str) -> EntrypointLayers:
    ref = parse_reference(raw)
    manifest = client.get_manifest(ref)

    if media.is_image(manifest.media_type):
        image = load_image(client, ref.repository, manifest)
        return {image.architecture: list(image.layers)}

    layers = {}

    for desc in manifest.json().get("manifests", []):
        arch = (desc.get("platform") or {}).get("architecture")
        if arch not in ARCHITECTURES or arch in layers:
            continue

        child = client.get_manifest(ref.repository.digest(desc["digest"]))
        layers[arch] = list(load_image(client, ref.repository, child).layers)

    return layers


def _from_directory(directory: Path) -> EntrypointLayers:
    layers = {}

    for arch in ARCHITECTURES:
        files = sorted((directory / arch).glob("*.tar.gz"))
        if files:
            layers[arch] = [layer_from_file(path) for path in files]

    return layers


def load_entrypoint_layers(
    client: RegistryClient,
    image: Optional[str] = None,
    layers_dir: Optional[Path | str] = None,
) -> EntrypointLayers:
    """Loads the entrypoint layers of each supported architecture.

    Arguments:
        client: used to fetch the layers of an entrypoint image.
        image: reference of a (multi-arch) image holding the entrypoint.
        layers_dir: directory with an `amd64/` and an `arm64/` folder of gzip
            tarballs, used instead of an image.

    Raises:
        InvalidInput: if no layers can be found.
    """
    try:
        if layers_dir is not None:
            layers = _from_directory(Path(layers_dir))
        elif image:
            layers = _from_image(client, image)
        else:
            layers = {}

    except (ImagetestError, OSError) as exc:
        raise InvalidInput(f"invalid entrypoint image provided: {exc}") from exc

    layers = {arch: found for arch, found in layers.items() if arch in ARCHITECTURES and found}

    if not layers:
        raise InvalidInput("invalid entrypoint image provided")

    log(f"loaded entrypoint layers architectures={','.join(sorted(layers))}")

    return layers


class EntrypointStore:
    """Loads the entrypoint layers once and shares them across runs.

    Arguments:
        client: used to fetch the layers of an entrypoint image.
        image: reference of the entrypoint image.
        layers_dir: directory of per-architecture tarballs.
    """

    def __init__(
        self,
        client: RegistryClient,
        image: Optional[str] = None,
        layers_dir: Optional[Path | str] = None,
    ):
        self._client = client
        self._image = image
        self._layers_dir = layers_dir
        self._layers: Optional[EntrypointLayers] = None
        self._lock = threading.Lock()

    def get(self) -> EntrypointLayers:
        """Gets the layers keyed by architecture, loading them on first use.

        Raises:
            InvalidInput: if no layers can be found.
        """
        with self._lock:
            if self._layers is None:
                self._layers = load_entrypoint_layers(self._client, self._image, self._layers_dir)

            return self._layers
