"""Functions and data structures used to represent and manage imagetest
configuration."""
from pathlib import Path
from typing import Dict, List, Optional

import toml
from attrs import define, field
from cattrs import structure
from cattrs.errors import BaseValidationError

from imagetest.core.errors import InvalidInput

DEFAULT_PLUGINS = [
    "imagetest.drivers.docker_in_docker",
    "imagetest.drivers.k3s_in_docker",
    "imagetest.drivers.existing_cluster",
]


@define(frozen=True, kw_only=True)
class TestExecutionConfig:
    """Global policy deciding which tests run and when drivers are kept.

    Arguments:
        skip_all: skip every tests resource.
        skip_teardown: never tear drivers down.
        skip_teardown_on_failure: keep drivers of failed runs for inspection.
        include_by_label: run only the resources having all these labels.
        exclude_by_label: skip the resources having any of these labels.
    """

    __test__ = False

    skip_all: bool = False
    skip_teardown: bool = False
    skip_teardown_on_failure: bool = False
    include_by_label: Dict[str, str] = field(factory=dict)
    exclude_by_label: Dict[str, str] = field(factory=dict)


@define(frozen=True, kw_only=True)
class RegistryAuthConfig:
    """Static credentials for a registry.

    Arguments:
        username: the user name.
        password: the password or access token.
        auth: base64 encoded `username:password`, used instead of the pair.
    """

    username: str = ""
    password: str = field(default="", repr=False)
    auth: str = field(default="", repr=False)


@define(frozen=True, kw_only=True)
class RegistryConfig:
    """Options of the registry client.

    Arguments:
        timeout: timeout of each request in seconds.
        user_agent: sent with every request.
        retries: attempts made for each request.
        insecure: registries reached over plain HTTP.
        auths: static credentials keyed by registry host.
    """

    timeout: float = 60.0
    user_agent: str = "imagetest"
    retries: int = 5
    insecure: List[str] = field(factory=list)
    auths: Dict[str, RegistryAuthConfig] = field(factory=dict)


@define(frozen=True, kw_only=True)
class EntrypointConfig:
    """Where the entrypoint layers come from.

    Arguments:
        image: reference of a multi-arch image holding the entrypoint.
        layers_dir: directory with an `amd64/` and an `arm64/` folder of gzip
            tarballs, used instead of the image.
    """

    image: Optional[str] = None
    layers_dir: Optional[str] = None


@define(frozen=True, kw_only=True)
class Config:
    """imagetest's configuration.

    Arguments:
        repo: the repository where test images are pushed, under `imagetest`.
        extra_repos: other repositories the drivers need credentials for.
        plugins: all the driver plugins to load.
        test_execution: which tests run and when drivers are kept.
        registry: options of the registry client.
        entrypoint: where the entrypoint layers come from.
        teardown_timeout: maximum duration of a driver teardown.
    """

    repo: Optional[str] = None
    extra_repos: List[str] = field(factory=list)
    plugins: List[str] = field(factory=lambda: list(DEFAULT_PLUGINS))
    test_execution: TestExecutionConfig = field(factory=TestExecutionConfig)
    registry: RegistryConfig = field(factory=RegistryConfig)
    entrypoint: EntrypointConfig = field(factory=EntrypointConfig)
    teardown_timeout: str = "10m"


def load_config(path: Optional[Path | str]) -> Config:
    """Loads the configuration from a file.

    A missing file results in the default configuration.

    Arguments:
        path: configuration file's path.
    """
    if path is None or not Path(path).exists():
        return Config()

    try:
        return structure(toml.load(path), Config)

    except (BaseValidationError, KeyError, TypeError, ValueError) as exc:
        raise InvalidInput(f"invalid configuration {path}: {exc!r}") from exc
