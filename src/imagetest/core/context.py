"""Definiton of the contexts capturing all the data needed to run tests."""
import os
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Type

from attrs import define, field

from imagetest.core.config import Config
from imagetest.core.entrypoint import EntrypointStore
from imagetest.core.errors import InvalidInput
from imagetest.core.plugin import load_plugin
from imagetest.core.reference import Repository, parse_repository
from imagetest.core.teardown import TeardownPolicy, env_flag
from imagetest.registry.auth import Credentials, Keychain, default_keychain
from imagetest.registry.client import RegistryClient

if TYPE_CHECKING:
    from imagetest.drivers.base import Driver


@define(frozen=True, kw_only=True)
class Context:
    """Contains all the data shared by every run.

    Arguments:
        config: imagetest's configuration.
        client: the registry client.
        keychain: resolves registry credentials.
        entrypoint: the entrypoint layers added to test images.
        drivers: all the registered drivers keyed by name.
        teardown: when drivers are kept around after a run.
        skip_all: skip every run.
        workstation: set when imagetest runs inside docker-in-docker.
        repo: repository overriding the configured one.
    """

    config: Config
    client: RegistryClient
    keychain: Keychain
    entrypoint: EntrypointStore
    drivers: Dict[str, Type["Driver"]]
    teardown: TeardownPolicy = field(factory=TeardownPolicy)
    skip_all: bool = False
    workstation: bool = False
    repo: Optional[str] = None

    def user_repo(self, override: Optional[str] = None) -> Repository:
        """Gets the repository chosen by the user.

        Arguments:
            override: repository set on the tests resource.

        Raises:
            InvalidInput: if no repository has been configured.
        """
        raw = override or self.repo or self.config.repo
        if not raw:
            raise InvalidInput("no repository configured, set `repo` or IMAGETEST_REPO")

        return parse_repository(raw)

    def extra_repos(self) -> List[Repository]:
        """The other repositories the drivers need credentials for."""
        return [parse_repository(raw) for raw in self.config.extra_repos]


def _static_credentials(config: Config) -> Dict[str, Credentials]:
    creds = {}

    for registry, auth in config.registry.auths.items():
        if auth.auth:
            creds[registry] = Credentials.from_auth(auth.auth)
        else:
            creds[registry] = Credentials(username=auth.username, password=auth.password)

    return creds


def load_drivers(plugins: List[str]) -> Dict[str, Type["Driver"]]:
    """Loads the drivers exposed by the plugins.

    Raises:
        ValueError: if two drivers have the same name.
    """
    drivers = {}

    for plugin_path in plugins:
        plugin = load_plugin(plugin_path)

        for driver in plugin.drivers:
            name = driver.spec_name()
            if name in drivers:
                raise ValueError(f"driver with name {name} is already present")

            drivers[name] = driver

    return drivers


def load_context(config: Config, environ: Optional[Mapping[str, str]] = None) -> Context:
    """Prepares the context to be used in imagetest.

    The environment is read once here: later changes are not seen by runs.

    Arguments:
        config: imagetest's configuration.
        environ: the environment variables, defaults to the process ones.

    Returns:
        The context.
    """
    environ = dict(os.environ if environ is None else environ)

    keychain = default_keychain(_static_credentials(config), environ)
    client = RegistryClient(
        keychain=keychain,
        timeout=config.registry.timeout,
        user_agent=config.registry.user_agent,
        retries=config.registry.retries,
        insecure=config.registry.insecure,
    )

    return Context(
        config=config,
        client=client,
        keychain=keychain,
        entrypoint=EntrypointStore(
            client,
            image=config.entrypoint.image,
            layers_dir=config.entrypoint.layers_dir,
        ),
        drivers=load_drivers(config.plugins),
        teardown=TeardownPolicy.from_config(config.test_execution, environ),
        skip_all=config.test_execution.skip_all or env_flag(environ, "SKIP_ALL"),
        workstation=bool(environ.get("WORKSTATION")),
        repo=environ.get("IMAGETEST_REPO") or None,
    )
