import io
import json
from pathlib import Path
from typing import IO, Dict, List, Optional, Sequence, Set, Tuple

import pytest
from attrs import define

from imagetest.bundler.layer import write_tarball
from imagetest.core.config import Config, EntrypointConfig
from imagetest.core.context import Context
from imagetest.core.deadline import Deadline
from imagetest.core.entrypoint import EntrypointStore
from imagetest.core.errors import DeadlineExceeded, DriverSetupError, TestError
from imagetest.core.reference import Reference, Repository
from imagetest.core.teardown import TeardownPolicy
from imagetest.drivers.base import Driver
from imagetest.registry import media
from imagetest.registry.auth import StaticKeychain
from imagetest.registry.client import Manifest, RegistryError, sha256_digest

BASE_REPO = Repository(registry="cgr.dev", repository="chainguard/busybox")


def _encode(data) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


class MemoryRegistry:
    """A registry keeping manifests and blobs in memory, with the same
    surface as the registry client."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.repo_blobs: Dict[Repository, Set[str]] = {}
        self.manifests: Dict[Tuple[Repository, str], Manifest] = {}
        self.uploads: List[Tuple[Repository, str]] = []
        self.mounts: List[Tuple[Repository, str]] = []

    def _store(self, repo: Repository, data: bytes) -> str:
        digest = sha256_digest(data)
        self.blobs[digest] = data
        self.repo_blobs.setdefault(repo, set()).add(digest)

        return digest

    def get_manifest(self, ref: Reference) -> Manifest:
        try:
            return self.manifests[(ref.repository, ref.identifier)]
        except KeyError:
            raise RegistryError(f"manifest {ref} not found", status=404) from None

    def put_manifest(self, repo: Repository, manifest: Manifest, tag: Optional[str] = None) -> Reference:
        self.manifests[(repo, manifest.digest)] = manifest

        if tag is not None:
            self.manifests[(repo, tag)] = manifest

        return repo.digest(manifest.digest)

    def blob_exists(self, repo: Repository, digest: str) -> bool:
        return digest in self.repo_blobs.get(repo, set())

    def get_blob(self, repo: Repository, digest: str) -> bytes:
        if not self.blob_exists(repo, digest):
            raise RegistryError(f"blob {digest} not found in {repo}", status=404)

        return self.blobs[digest]

    def download_blob(self, repo: Repository, digest: str, fileobj: IO[bytes]):
        fileobj.write(self.get_blob(repo, digest))

    def mount_blob(self, repo: Repository, digest: str, source: Repository) -> bool:
        if not self.blob_exists(source, digest):
            return False

        self.repo_blobs.setdefault(repo, set()).add(digest)
        self.mounts.append((repo, digest))

        return True

    def upload_blob(self, repo: Repository, digest: str, size: int, fileobj: IO[bytes]):
        data = fileobj.read()

        if len(data) != size or sha256_digest(data) != digest:
            raise RegistryError(f"blob {digest} does not match its content", status=400)

        self._store(repo, data)
        self.uploads.append((repo, digest))

    def copy_blob(self, source: Repository, repo: Repository, digest: str, size: int):
        if self.blob_exists(repo, digest) or self.mount_blob(repo, digest, source):
            return

        buf = io.BytesIO()
        self.download_blob(source, digest, buf)
        buf.seek(0)
        self.upload_blob(repo, digest, size, buf)

    def add_image(
        self,
        repo: Repository = BASE_REPO,
        architecture: str = "amd64",
        config: Optional[Dict] = None,
        layers: Sequence[bytes] = (b"base layer",),
        media_type: str = media.OCI_MANIFEST,
        history: bool = True,
        tag: Optional[str] = None,
    ) -> Reference:
        """Stores a single image whose layers are opaque bytes."""
        docker = media.is_docker(media_type)

        descriptors = [
            {
                "mediaType": media.DOCKER_LAYER if docker else media.OCI_LAYER,
                "size": len(content),
                "digest": self._store(repo, content),
            }
            for content in layers
        ]

        config_file = {
            "architecture": architecture,
            "os": "linux",
            "config": config if config is not None else {"Env": ["PATH=/usr/bin:/bin"], "Cmd": ["/bin/sh"]},
            "rootfs": {
                "type": "layers",
                "diff_ids": [sha256_digest(b"diff:" + content) for content in layers],
            },
        }
        if history:
            config_file["history"] = [{"created_by": "base"} for _ in layers]

        raw_config = _encode(config_file)

        manifest = {
            "schemaVersion": 2,
            "mediaType": media_type,
            "config": {
                "mediaType": media.DOCKER_CONFIG if docker else media.OCI_CONFIG,
                "size": len(raw_config),
                "digest": self._store(repo, raw_config),
            },
            "layers": descriptors,
        }

        return self.put_manifest(repo, Manifest(media_type=media_type, raw=_encode(manifest)), tag=tag)

    def add_index(
        self,
        architectures: Sequence[str],
        repo: Repository = BASE_REPO,
        media_type: str = media.OCI_INDEX,
        **kwargs,
    ) -> Reference:
        """Stores an index with one image per architecture."""
        children = []

        for arch in architectures:
            ref = self.add_image(repo=repo, architecture=arch, layers=[f"{arch} layer".encode()], **kwargs)
            manifest = self.get_manifest(ref)
            children.append(
                {
                    "mediaType": manifest.media_type,
                    "size": len(manifest.raw),
                    "digest": manifest.digest,
                    "platform": {"architecture": arch, "os": "linux"},
                }
            )

        index = {"schemaVersion": 2, "mediaType": media_type, "manifests": children}

        return self.put_manifest(repo, Manifest(media_type=media_type, raw=_encode(index)))

    def image_config(self, ref: Reference) -> Dict:
        """The config of a stored image, the first child's for an index."""
        manifest = self.get_manifest(ref)
        data = manifest.json()

        if media.is_index(manifest.media_type):
            return self.image_config(ref.repository.digest(data["manifests"][0]["digest"]))

        return json.loads(self.get_blob(ref.repository, data["config"]["digest"]))


@pytest.fixture
def registry() -> MemoryRegistry:
    return MemoryRegistry()


@pytest.fixture
def base_image(registry) -> Reference:
    return registry.add_image()


@pytest.fixture
def entrypoint_dir(tmp_path) -> Path:
    source = tmp_path / "entrypoint-src"
    source.mkdir()
    (source / "entrypoint").write_text("#!/bin/sh\nexec \"$@\"\n")

    layers_dir = tmp_path / "entrypoint"

    for arch in ("amd64", "arm64"):
        (layers_dir / arch).mkdir(parents=True)

        with open(layers_dir / arch / "entrypoint.tar.gz", "wb") as fileobj:
            write_tarball(source, "/ko-app", fileobj)

    return layers_dir


@define(frozen=True, kw_only=True)
class FakeOptions:
    fail_setup: bool = False
    fail_teardown: bool = False


class DriverCalls(list):
    """Calls made to the fake driver, in order."""

    def names(self) -> List[str]:
        return [call[0] for call in self]


@pytest.fixture
def driver_calls() -> DriverCalls:
    return DriverCalls()


@pytest.fixture
def fake_driver(registry, driver_calls):
    """A driver whose tests pass, exit with a code (`exit N`) or hang
    (`sleep N`) according to the command baked in the test image."""

    @define(kw_only=True)
    class FakeDriver(Driver):
        options_type = FakeOptions

        options: FakeOptions

        @classmethod
        def spec_name(cls) -> str:
            return "fake"

        def setup(self, deadline: Deadline):
            driver_calls.append(("setup", self.ctx.run_id))

            if self.options.fail_setup:
                raise DriverSetupError("sandbox did not start")

            self.teardowns.push("record teardown", lambda: driver_calls.append(("teardown", self.ctx.run_id)))

            if self.options.fail_teardown:
                self.teardowns.push("broken cleanup", self._broken)

        @staticmethod
        def _broken():
            raise RuntimeError("network still in use")

        def run(self, deadline: Deadline, ref: Reference):
            driver_calls.append(("run", str(ref)))

            cmd = registry.image_config(ref)["config"]["Cmd"][0]
            verb, _, arg = cmd.partition(" ")

            if verb == "exit" and int(arg) != 0:
                raise TestError(f"container exited with code {arg}", exit_code=int(arg), ref=str(ref))

            if verb == "sleep" and not deadline.wait(float(arg)):
                raise DeadlineExceeded("test did not complete before its timeout", ref=str(ref))

    return FakeDriver


@pytest.fixture
def make_context(registry, entrypoint_dir, fake_driver):
    def make(
        config: Optional[Config] = None,
        teardown: Optional[TeardownPolicy] = None,
        skip_all: bool = False,
    ) -> Context:
        config = config or Config(
            repo="example.com/team",
            entrypoint=EntrypointConfig(layers_dir=str(entrypoint_dir)),
        )

        return Context(
            config=config,
            client=registry,
            keychain=StaticKeychain(),
            entrypoint=EntrypointStore(registry, layers_dir=config.entrypoint.layers_dir),
            drivers={"fake": fake_driver},
            teardown=teardown or TeardownPolicy(),
            skip_all=skip_all,
        )

    return make


@pytest.fixture
def imagetest_context(make_context) -> Context:
    return make_context()
