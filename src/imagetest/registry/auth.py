"""Resolution of registry credentials.

Credentials are looked up in order from the static credentials configured by
the user, the local keychain (docker config, podman auth files and credential
helpers) and finally fall back to anonymous access.
"""
import base64
import json
import os
import subprocess
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from attrs import define, field

from imagetest.core.reference import DEFAULT_REGISTRY

# docker config stores Docker Hub credentials under this legacy key
_DOCKER_HUB_KEYS = ("https://index.docker.io/v1/", "index.docker.io", "docker.io")

# username returned by credential helpers when the secret is an identity token
_TOKEN_USERNAME = "<token>"


class CredentialsError(Exception):
    """Raised when a keychain cannot be read or a credential helper fails."""


@define(frozen=True, kw_only=True)
class Credentials:
    """Credentials used to authenticate with a registry.

    Arguments:
        username: the user name.
        password: the password or the access token.
        identity_token: OAuth2 refresh token, used instead of the password.
    """

    username: str = ""
    password: str = field(default="", repr=False)
    identity_token: str = field(default="", repr=False)

    @classmethod
    def from_auth(cls, auth: str) -> "Credentials":
        """Decodes a base64 `user:password` pair."""
        decoded = base64.b64decode(auth).decode("utf-8")
        username, _, password = decoded.partition(":")

        return cls(username=username, password=password)

    @property
    def auth(self) -> str:
        """The base64 `user:password` pair, as stored in docker configs."""
        return base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")

    def is_empty(self) -> bool:
        """True when no secret is available."""
        return not (self.username or self.password or self.identity_token)


class Keychain(Protocol):  # pylint: disable=too-few-public-methods
    """Resolves the credentials for a registry."""

    def resolve(self, registry: str) -> Optional[Credentials]:
        """Gets the credentials for a registry, None if it is unknown."""


def _normalize(key: str) -> str:
    for prefix in ("https://", "http://"):
        if key.startswith(prefix):
            key = key[len(prefix) :]

    return key.split("/", 1)[0]


def _candidates(registry: str) -> List[str]:
    if registry in (DEFAULT_REGISTRY, "docker.io", "registry-1.docker.io"):
        return list(_DOCKER_HUB_KEYS)

    return [registry]


@define(frozen=True, kw_only=True)
class StaticKeychain:
    """Credentials configured explicitly, keyed by registry host."""

    credentials: Dict[str, Credentials] = field(factory=dict)

    def resolve(self, registry: str) -> Optional[Credentials]:
        """Gets the credentials configured for a registry."""
        normalized = {_normalize(key): value for key, value in self.credentials.items()}

        for candidate in _candidates(registry):
            found = normalized.get(_normalize(candidate))
            if found is not None:
                return found

        return None


def run_credential_helper(helper: str, registry: str) -> Optional[Credentials]:
    """Fetches the credentials for a registry from a docker credential helper.

    Arguments:
        helper: name of the helper, i.e. `gcloud` for `docker-credential-gcloud`.
        registry: the registry host.

    Returns:
        The credentials, None if the helper does not know the registry.

    Raises:
        CredentialsError: if the helper cannot be executed.
    """
    try:
        proc = subprocess.run(
            [f"docker-credential-{helper}", "get"],
            input=registry.encode("utf-8"),
            capture_output=True,
            check=False,
            timeout=60,
        )

    except (OSError, subprocess.TimeoutExpired) as exc:
        raise CredentialsError(f"failed to run credential helper {helper}: {exc}") from exc

    if proc.returncode != 0:
        # helpers exit with an error when they have no credentials for the registry
        return None

    data = json.loads(proc.stdout)
    username = data.get("Username", "")
    secret = data.get("Secret", "")

    if username == _TOKEN_USERNAME:
        return Credentials(identity_token=secret)

    return Credentials(username=username, password=secret)


def _default_config_paths(environ: Mapping[str, str]) -> List[Path]:
    paths = []

    docker_config = environ.get("DOCKER_CONFIG")
    if docker_config:
        paths.append(Path(docker_config) / "config.json")
    else:
        paths.append(Path.home() / ".docker" / "config.json")

    if environ.get("REGISTRY_AUTH_FILE"):
        paths.append(Path(environ["REGISTRY_AUTH_FILE"]))

    if environ.get("XDG_RUNTIME_DIR"):
        paths.append(Path(environ["XDG_RUNTIME_DIR"]) / "containers" / "auth.json")

    paths.append(Path.home() / ".config" / "containers" / "auth.json")

    return paths


@define(kw_only=True)
class DockerKeychain:
    """Reads credentials the same way docker and podman do.

    Arguments:
        paths: config files to read, the first one knowing a registry wins.
    """

    paths: List[Path] = field(factory=list)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DockerKeychain":
        """Creates a keychain reading the default config locations."""
        return cls(paths=_default_config_paths(os.environ if environ is None else environ))

    def _load(self, path: Path) -> Dict:
        try:
            with open(path, encoding="utf-8") as config_file:
                return json.load(config_file)

        except FileNotFoundError:
            return {}

        except (OSError, ValueError) as exc:
            raise CredentialsError(f"failed to read {path}: {exc}") from exc

    def resolve(self, registry: str) -> Optional[Credentials]:
        """Gets the credentials for a registry from the config files."""
        candidates = [_normalize(candidate) for candidate in _candidates(registry)]

        for path in self.paths:
            config = self._load(path)
            if not config:
                continue

            helpers = config.get("credHelpers") or {}
            for candidate in candidates:
                if candidate in helpers:
                    return run_credential_helper(helpers[candidate], registry)

            auths = {_normalize(key): value for key, value in (config.get("auths") or {}).items()}
            for candidate in candidates:
                entry = auths.get(candidate)
                if not entry:
                    continue

                if entry.get("identitytoken"):
                    return Credentials(identity_token=entry["identitytoken"])

                if entry.get("auth"):
                    return Credentials.from_auth(entry["auth"])

                if entry.get("username"):
                    return Credentials(
                        username=entry["username"], password=entry.get("password", "")
                    )

            if config.get("credsStore"):
                found = run_credential_helper(config["credsStore"], registry)
                if found is not None:
                    return found

        return None


@define(frozen=True, kw_only=True)
class MultiKeychain:
    """Consults several keychains in order, returning the first match."""

    keychains: List[Keychain] = field(factory=list)

    def resolve(self, registry: str) -> Optional[Credentials]:
        """Gets the credentials from the first keychain knowing the registry."""
        for keychain in self.keychains:
            found = keychain.resolve(registry)
            if found is not None and not found.is_empty():
                return found

        return None


def default_keychain(
    static: Optional[Mapping[str, Credentials]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MultiKeychain:
    """Creates the keychain used by imagetest: static credentials first, then
    the local docker/podman keychain.

    Arguments:
        static: credentials configured explicitly by the user.
        environ: environment used to discover the config files.
    """
    return MultiKeychain(
        keychains=[
            StaticKeychain(credentials=dict(static or {})),
            DockerKeychain.from_env(environ),
        ]
    )


def docker_config(keychain: Keychain, registries: Iterable[str]) -> Dict[str, Dict]:
    """Builds the content of a `~/.docker/config.json` granting access to the
    given registries.

    Registries without credentials are left out, so that they are accessed
    anonymously.
    """
    auths = {}

    for registry in registries:
        creds = keychain.resolve(registry)
        if creds is None or creds.is_empty():
            continue

        if creds.identity_token:
            auths[registry] = {"identitytoken": creds.identity_token}

        else:
            auths[registry] = {
                "username": creds.username,
                "password": creds.password,
                "auth": creds.auth,
            }

    return {"auths": auths}
