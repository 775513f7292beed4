"""The standard mutators composed to turn a base image into a test image."""
from typing import Callable, Dict, Iterable, List, Mapping, Tuple

from imagetest.bundler.image import Image
from imagetest.bundler.layer import Layer
from imagetest.core.entrypoint import DEFAULT_ENTRYPOINT, DEFAULT_USER, DEFAULT_WORK_DIR
from imagetest.registry import media

Mutator = Callable[[Image], Image]

# annotation recording which test an image was built for
TEST_NAME_ANNOTATION = "imagetest.test_name"


def entrypoint_mutator(layers: Mapping[str, List[Layer]]) -> Mutator:
    """Appends the entrypoint layers matching the image's architecture.

    Images of other architectures are returned unchanged.
    """

    def mutate(image: Image) -> Image:
        found = layers.get(image.architecture)
        if not found:
            return image

        return image.append_layers(*found)

    return mutate


def content_mutator(content: Iterable[Layer]) -> Mutator:
    """Appends the layers holding the user's content, in order."""
    content = tuple(content)

    def mutate(image: Image) -> Image:
        return image.append_layers(*content)

    return mutate


def env_pairs(envs: Mapping[str, str]) -> List[Tuple[str, str]]:
    """Orders the environment variables by key, so that equal inputs always
    produce the same config."""
    return sorted(envs.items())


def config_mutator(envs: Mapping[str, str], cmd: str) -> Mutator:
    """Rewrites the runtime configuration to run `cmd` through the entrypoint.

    The variables are appended after the base image's, without removing
    duplicates: the last occurrence wins when the container starts.

    Arguments:
        envs: environment variables to add.
        cmd: the test command, passed as the only `Cmd` argument.
    """
    pairs = env_pairs(envs)

    def mutate(image: Image) -> Image:
        config = image.container_config

        config["Env"] = list(config.get("Env") or []) + [f"{key}={value}" for key, value in pairs]
        config["Entrypoint"] = list(DEFAULT_ENTRYPOINT)
        config["Cmd"] = [cmd]
        config["User"] = DEFAULT_USER

        if not config.get("WorkingDir"):
            config["WorkingDir"] = DEFAULT_WORK_DIR

        return image.with_container_config(config)

    return mutate


def annotations_mutator(annotations: Dict[str, str]) -> Mutator:
    """Adds annotations to OCI manifests. Docker manifests have none."""

    def mutate(image: Image) -> Image:
        if media.is_docker(image.media_type):
            return image

        return image.with_annotations(annotations)

    return mutate


def name_annotation_mutator(name: str) -> Mutator:
    """Records the name of the test in the manifest annotations."""
    return annotations_mutator({TEST_NAME_ANNOTATION: name})
