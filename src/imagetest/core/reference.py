"""Parsing and representation of OCI image references."""
import json
import re
from typing import Dict, Mapping, Optional

from attrs import define
from cattrs import unstructure

from imagetest.core.errors import InvalidInput

__all__ = [
    "DEFAULT_REGISTRY",
    "Reference",
    "Repository",
    "ResolvedImage",
    "is_local_registry",
    "parse_digest_reference",
    "parse_reference",
    "parse_repository",
    "resolve_images",
    "serialize_images",
]

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"

_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPOSITORY_RE = re.compile(rf"^{_COMPONENT}(?:/{_COMPONENT})*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^(sha256:[a-f0-9]{64}|sha512:[a-f0-9]{128})$")
_REGISTRY_RE = re.compile(r"^[a-zA-Z0-9.-]+(?::[0-9]{1,5})?$|^\[[0-9a-fA-F:]+\](?::[0-9]{1,5})?$")

# hosts resolving to the machine running imagetest
_LOCAL_RE = re.compile(r".*\.local(?:host)?(?::\d{1,5})?$")
_LOOPBACK_RE = re.compile(r"^127\.0\.0\.1(?::\d{1,5})?$")
_IPV6_LOOPBACK_RE = re.compile(r"^\[::1\](?::\d{1,5})?$")


def is_local_registry(registry: str) -> bool:
    """Checks if a registry host points to the local machine.

    Arguments:
        registry: registry host, optionally with a port (i.e. `localhost:5000`).
    """
    return bool(
        registry == "localhost"
        or registry.startswith("localhost:")
        or _LOCAL_RE.match(registry)
        or _LOOPBACK_RE.match(registry)
        or _IPV6_LOOPBACK_RE.match(registry)
    )


@define(frozen=True, kw_only=True, order=True)
class Repository:
    """A repository hosted on a registry.

    Arguments:
        registry: the registry host, including the port if any.
        repository: path of the repository within the registry.
    """

    registry: str
    repository: str

    def __str__(self):
        return f"{self.registry}/{self.repository}"

    def digest(self, digest: str) -> "Reference":
        """Creates a reference to a digest in this repository."""
        return Reference(repository=self, digest=digest)

    def tag(self, tag: str) -> "Reference":
        """Creates a reference to a tag in this repository."""
        return Reference(repository=self, tag=tag)

    def child(self, name: str) -> "Repository":
        """Creates a repository nested under this one (i.e. `{repo}/imagetest`)."""
        return Repository(registry=self.registry, repository=f"{self.repository}/{name}")

    @property
    def is_local(self) -> bool:
        """True when the registry is served from the local machine."""
        return is_local_registry(self.registry)


@define(frozen=True, kw_only=True)
class Reference:
    """A reference to an OCI artifact identified by a tag or a digest.

    Arguments:
        repository: where the artifact is stored.
        tag: the tag, if any.
        digest: the digest, if any. It takes precedence over the tag.
    """

    repository: Repository
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def registry(self) -> str:
        """The registry host."""
        return self.repository.registry

    @property
    def identifier(self) -> str:
        """The digest if present, otherwise the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def is_digest(self) -> bool:
        """True when the reference pins a digest."""
        return self.digest is not None

    def __str__(self):
        base = str(self.repository)

        if self.tag is not None:
            base = f"{base}:{self.tag}"

        if self.digest is not None:
            base = f"{base}@{self.digest}"

        return base


def _split_registry(name: str):
    parts = name.split("/", 1)

    if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        return parts[0], parts[1]

    return DEFAULT_REGISTRY, name


def parse_repository(raw: str) -> Repository:
    """Parses a repository name (i.e. `ghcr.io/org/repo`).

    Docker Hub names are normalized the same way docker does, i.e. `busybox`
    becomes `index.docker.io/library/busybox`.

    Raises:
        InvalidInput: if the name is not a valid repository.
    """
    if not raw:
        raise InvalidInput("empty repository name")

    registry, path = _split_registry(raw.strip())

    if registry == "docker.io":
        registry = DEFAULT_REGISTRY

    if registry == DEFAULT_REGISTRY and "/" not in path:
        path = f"library/{path}"

    if not _REGISTRY_RE.match(registry):
        raise InvalidInput(f"invalid registry {registry!r} in {raw!r}")

    if not _REPOSITORY_RE.match(path):
        raise InvalidInput(f"invalid repository {path!r} in {raw!r}")

    return Repository(registry=registry, repository=path)


def parse_reference(raw: str) -> Reference:
    """Parses an image reference (i.e. `cgr.dev/chainguard/busybox@sha256:...`).

    A reference without tag and digest gets the `latest` tag.

    Raises:
        InvalidInput: if the reference cannot be parsed.
    """
    if not raw or not raw.strip():
        raise InvalidInput("empty image reference")

    name = raw.strip()
    digest = None
    tag = None

    if "@" in name:
        name, digest = name.split("@", 1)

        if not _DIGEST_RE.match(digest):
            raise InvalidInput(f"invalid digest {digest!r} in {raw!r}")

    last = name.rsplit("/", 1)[-1]
    if ":" in last:
        name, tag = name.rsplit(":", 1)

        if not _TAG_RE.match(tag):
            raise InvalidInput(f"invalid tag {tag!r} in {raw!r}")

    if tag is None and digest is None:
        tag = DEFAULT_TAG

    return Reference(repository=parse_repository(name), tag=tag, digest=digest)


def parse_digest_reference(raw: str) -> Reference:
    """Parses an image reference, rejecting the ones without a digest.

    Raises:
        InvalidInput: if the reference cannot be parsed or it is tag-only.
    """
    ref = parse_reference(raw)

    if not ref.is_digest:
        raise InvalidInput(
            f"tag references are not supported, pin {raw!r} to a digest",
            summary="tag-only image reference",
        )

    return ref


@define(frozen=True, kw_only=True)
class ResolvedImage:
    """Projection of a reference exposed to test containers via `IMAGES`.

    Arguments:
        registry: the registry host.
        repo: the repository path within the registry.
        registry_repo: registry and repository path.
        digest: the image digest.
        pseudo_tag: a tag usable by tools that require one (`unused@<digest>`).
        ref: the full reference.
    """

    registry: str
    repo: str
    registry_repo: str
    digest: str
    pseudo_tag: str
    ref: str

    @classmethod
    def from_reference(cls, ref: Reference) -> "ResolvedImage":
        """Projects a digest reference."""
        return cls(
            registry=ref.registry,
            repo=ref.repository.repository,
            registry_repo=str(ref.repository),
            digest=ref.identifier,
            pseudo_tag=f"unused@{ref.identifier}",
            ref=str(ref),
        )


def resolve_images(images: Mapping[str, Reference | str]) -> Dict[str, ResolvedImage]:
    """Resolves all the images made available to the tests.

    Arguments:
        images: image references keyed by the name used in the tests.

    Raises:
        InvalidInput: if any reference is invalid or not pinned to a digest.
    """
    resolved = {}

    for key, raw in images.items():
        ref = parse_digest_reference(raw) if isinstance(raw, str) else raw

        if not ref.is_digest:
            raise InvalidInput(
                f"tag references are not supported, pin {key} ({ref}) to a digest",
                summary="tag-only image reference",
            )

        resolved[key] = ResolvedImage.from_reference(ref)

    return resolved


def serialize_images(images: Mapping[str, ResolvedImage]) -> str:
    """Serializes the resolved images as JSON.

    Keys are sorted so that equal inputs always produce the same string.
    """
    return json.dumps(unstructure(dict(images)), sort_keys=True, separators=(",", ":"))
