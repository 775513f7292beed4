"""In-memory view of a single-platform image: its config file and its layers."""
import copy
import io
import json
from typing import Any, Dict, Optional, Tuple

from attrs import define, evolve, field

from imagetest.bundler.layer import Layer
from imagetest.core.errors import ImageAssemblyError
from imagetest.core.reference import Repository
from imagetest.registry import media
from imagetest.registry.client import Manifest, RegistryClient, sha256_digest


def _encode(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


@define(frozen=True, kw_only=True)
class Image:
    """An image, as seen by the mutators.

    Images are immutable: every change returns a new image. The original
    config and manifest bytes are preserved until they are changed, so an
    unmodified image keeps its digest.

    Arguments:
        media_type: media type of the image manifest.
        config_media_type: media type of the config blob.
        config_file: the decoded config blob.
        raw_config: the config bytes as fetched from the registry.
        layers: the layers, from the bottom one.
        annotations: annotations of the manifest.
        raw_manifest: the manifest bytes as fetched from the registry.
    """

    media_type: str
    config_media_type: str
    config_file: Dict[str, Any] = field(factory=dict)
    raw_config: Optional[bytes] = field(default=None, repr=False)
    layers: Tuple[Layer, ...] = ()
    annotations: Dict[str, str] = field(factory=dict)
    raw_manifest: Optional[bytes] = field(default=None, repr=False)

    @property
    def architecture(self) -> str:
        """The architecture recorded in the config, i.e. `amd64`."""
        return self.config_file.get("architecture", "")

    @property
    def container_config(self) -> Dict[str, Any]:
        """A copy of the runtime configuration (`Env`, `Cmd`, ...)."""
        return copy.deepcopy(self.config_file.get("config") or {})

    def with_container_config(self, config: Dict[str, Any]) -> "Image":
        """Replaces the runtime configuration."""
        config_file = copy.deepcopy(self.config_file)
        config_file["config"] = config

        return evolve(self, config_file=config_file, raw_config=None, raw_manifest=None)

    def append_layers(self, *layers: Layer) -> "Image":
        """Adds layers on top of the existing ones."""
        if not layers:
            return self

        layer_type = media.layer_type(self.media_type)
        config_file = copy.deepcopy(self.config_file)

        rootfs = config_file.setdefault("rootfs", {"type": "layers", "diff_ids": []})
        rootfs.setdefault("diff_ids", []).extend(layer.diff_id for layer in layers)

        if "history" in config_file:
            config_file["history"].extend({"created_by": "imagetest"} for _ in layers)

        return evolve(
            self,
            config_file=config_file,
            raw_config=None,
            raw_manifest=None,
            layers=self.layers + tuple(layer.with_media_type(layer_type) for layer in layers),
        )

    def with_annotations(self, annotations: Dict[str, str]) -> "Image":
        """Adds annotations to the manifest."""
        return evolve(self, annotations={**self.annotations, **annotations}, raw_manifest=None)

    def config_bytes(self) -> bytes:
        """The serialized config blob."""
        if self.raw_config is not None:
            return self.raw_config

        return _encode(self.config_file)

    def manifest(self) -> Manifest:
        """Builds the manifest of this image."""
        if self.raw_manifest is not None:
            return Manifest(media_type=self.media_type, raw=self.raw_manifest)

        config = self.config_bytes()
        data: Dict[str, Any] = {
            "schemaVersion": 2,
            "mediaType": self.media_type,
            "config": {
                "mediaType": self.config_media_type,
                "size": len(config),
                "digest": sha256_digest(config),
            },
            "layers": [layer.descriptor() for layer in self.layers],
        }

        if self.annotations:
            data["annotations"] = dict(self.annotations)

        return Manifest(media_type=self.media_type, raw=_encode(data))


def load_image(client: RegistryClient, repo: Repository, manifest: Manifest) -> Image:
    """Builds the view of an image from its manifest.

    Arguments:
        client: used to fetch the config blob.
        repo: repository holding the image.
        manifest: the image manifest.

    Raises:
        ImageAssemblyError: if the manifest is not a single image.
    """
    if not media.is_image(manifest.media_type):
        raise ImageAssemblyError(f"unsupported manifest media type {manifest.media_type!r}")

    data = manifest.json()
    raw_config = client.get_blob(repo, data["config"]["digest"])
    config_file = json.loads(raw_config)

    diff_ids = (config_file.get("rootfs") or {}).get("diff_ids") or []
    if len(diff_ids) != len(data.get("layers", [])):
        raise ImageAssemblyError(f"config of image in {repo} does not match its layers")

    layers = tuple(
        Layer(
            media_type=desc["mediaType"],
            digest=desc["digest"],
            size=desc["size"],
            diff_id=diff_id,
            source=repo,
            annotations=desc.get("annotations") or {},
        )
        for desc, diff_id in zip(data.get("layers", []), diff_ids)
    )

    return Image(
        media_type=manifest.media_type,
        config_media_type=data["config"]["mediaType"],
        config_file=config_file,
        raw_config=raw_config,
        layers=layers,
        annotations=data.get("annotations") or {},
        raw_manifest=manifest.raw,
    )


def push_image(client: RegistryClient, repo: Repository, image: Image) -> Manifest:
    """Pushes the blobs and the manifest of an image, by digest.

    Returns:
        The pushed manifest.
    """
    for layer in image.layers:
        if layer.path is not None:
            with open(layer.path, "rb") as fileobj:
                client.upload_blob(repo, layer.digest, layer.size, fileobj)

        elif layer.source is not None:
            client.copy_blob(layer.source, repo, layer.digest, layer.size)

        else:
            raise ImageAssemblyError(f"layer {layer.digest} has no content")

    config = image.config_bytes()
    with io.BytesIO(config) as fileobj:
        client.upload_blob(repo, sha256_digest(config), len(config), fileobj)

    manifest = image.manifest()
    client.put_manifest(repo, manifest)

    return manifest

