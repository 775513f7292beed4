"""Appends layers and rewrites the config of a base image, pushing the result
to a target repository."""
import json
from typing import Any, Dict, List, Sequence

from imagetest.bundler.image import Image, load_image, push_image
from imagetest.bundler.mutators import Mutator
from imagetest.core.entrypoint import ARCHITECTURES
from imagetest.core.errors import ImageAssemblyError
from imagetest.core.reference import Reference, Repository
from imagetest.registry import media
from imagetest.registry.client import Manifest, RegistryClient
from imagetest.utils import log


def apply_mutators(image: Image, mutators: Sequence[Mutator]) -> Image:
    """Applies the mutators in order."""
    for mutator in mutators:
        image = mutator(image)

    return image


def _selected(desc: Dict[str, Any]) -> bool:
    platform = desc.get("platform") or {}

    return platform.get("architecture") in ARCHITECTURES and media.is_image(desc.get("mediaType", ""))


def _mutate_image(
    client: RegistryClient,
    source: Repository,
    manifest: Manifest,
    target: Repository,
    mutators: Sequence[Mutator],
) -> Manifest:
    image = apply_mutators(load_image(client, source, manifest), mutators)

    return push_image(client, target, image)


def _mutate_index(
    client: RegistryClient,
    base: Reference,
    index: Manifest,
    target: Repository,
    mutators: Sequence[Mutator],
) -> Manifest:
    data = index.json()
    children: List[Dict[str, Any]] = []

    for desc in data.get("manifests", []):
        if not _selected(desc):
            log(f"skipping platform {desc.get('platform')} of {base}")
            continue

        child = client.get_manifest(base.repository.digest(desc["digest"]))
        pushed = _mutate_image(client, base.repository, child, target, mutators)

        children.append(
            {
                **desc,
                "mediaType": pushed.media_type,
                "digest": pushed.digest,
                "size": len(pushed.raw),
            }
        )

    if not children:
        raise ImageAssemblyError(f"{base} has no {' or '.join(ARCHITECTURES)} images")

    new_index: Dict[str, Any] = {
        "schemaVersion": 2,
        "mediaType": index.media_type,
        "manifests": children,
    }

    if data.get("annotations"):
        new_index["annotations"] = data["annotations"]

    manifest = Manifest(
        media_type=index.media_type,
        raw=json.dumps(new_index, sort_keys=True, separators=(",", ":")).encode("utf-8"),
    )
    client.put_manifest(target, manifest)

    return manifest


def mutate(
    client: RegistryClient,
    base: Reference,
    target: Repository,
    mutators: Sequence[Mutator],
) -> Reference:
    """Builds a new image from a base one.

    When `base` is an index, the mutators are applied to each `amd64` and
    `arm64` child and a new index is assembled from the results. Children of
    other platforms are dropped.

    Arguments:
        client: registry client used to pull and push.
        base: the base image or index.
        target: repository where the result is pushed.
        mutators: applied, in order, to every image.

    Returns:
        The digest reference of the pushed image or index.

    Raises:
        ImageAssemblyError: if the base cannot be fetched or the result cannot
            be pushed.
    """
    manifest = client.get_manifest(base)

    if media.is_index(manifest.media_type):
        pushed = _mutate_index(client, base, manifest, target, mutators)

    elif media.is_image(manifest.media_type):
        pushed = _mutate_image(client, base.repository, manifest, target, mutators)

    else:
        raise ImageAssemblyError(f"{base} has unsupported media type {manifest.media_type!r}")

    return target.digest(pushed.digest)
