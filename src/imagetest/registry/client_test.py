import io
import json
import re
import uuid
from typing import Dict, List, Optional
from unittest import mock

import httpx
import pytest
from testfixtures import ShouldRaise, compare

from imagetest.core.reference import Repository, parse_reference
from imagetest.registry import media
from imagetest.registry.auth import Credentials, StaticKeychain
from imagetest.registry.client import Manifest, RegistryClient, RegistryError, sha256_digest

_PATH_RE = re.compile(r"^/v2/(?P<repo>.+)/(?P<kind>manifests|blobs)/(?P<ref>[^/]+)$")
_UPLOAD_RE = re.compile(r"^/v2/(?P<repo>.+)/blobs/uploads/(?P<session>[^/]*)$")

REALM = "https://auth.example.com/token"


class FakeRegistry:
    """Minimal OCI distribution API, optionally behind a bearer token."""

    def __init__(self, token: Optional[str] = None, failures: int = 0):
        self.token = token
        self.failures = failures
        self.manifests: Dict[str, tuple] = {}
        self.blobs: Dict[str, bytes] = {}
        self.sessions: Dict[str, bytearray] = {}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if str(request.url).startswith(REALM):
            return httpx.Response(200, json={"token": self.token})

        if self.failures:
            self.failures -= 1
            return httpx.Response(503, text="unavailable")

        if self.token and request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(
                401,
                headers={"WWW-Authenticate": f'Bearer realm="{REALM}",service="registry.example.com"'},
            )

        path = request.url.path

        match = _UPLOAD_RE.match(path)
        if match:
            return self._upload(request, match["repo"], match["session"])

        match = _PATH_RE.match(path)
        if match is None:
            return httpx.Response(404)

        if match["kind"] == "manifests":
            return self._manifest(request, match["ref"])

        if match["ref"] not in self.blobs:
            return httpx.Response(404)

        return httpx.Response(200, content=b"" if request.method == "HEAD" else self.blobs[match["ref"]])

    def _manifest(self, request: httpx.Request, ref: str) -> httpx.Response:
        if request.method == "PUT":
            self.manifests[sha256_digest(request.content)] = (request.headers["Content-Type"], request.content)
            return httpx.Response(201)

        if ref not in self.manifests:
            return httpx.Response(404, text="manifest unknown")

        media_type, raw = self.manifests[ref]
        return httpx.Response(200, content=raw, headers={"Content-Type": media_type})

    def _upload(self, request: httpx.Request, repo: str, session: str) -> httpx.Response:
        if request.method == "POST":
            mount = request.url.params.get("mount")
            if mount and mount in self.blobs:
                return httpx.Response(201)

            session = uuid.uuid4().hex
            self.sessions[session] = bytearray()
            return httpx.Response(202, headers={"Location": f"/v2/{repo}/blobs/uploads/{session}"})

        self.sessions[session].extend(request.read())

        if request.method == "PATCH":
            return httpx.Response(202, headers={"Location": f"/v2/{repo}/blobs/uploads/{session}"})

        data = bytes(self.sessions.pop(session))
        digest = request.url.params["digest"]
        if sha256_digest(data) != digest:
            return httpx.Response(400, text="digest invalid")

        self.blobs[digest] = data
        return httpx.Response(201)


def _client(server: FakeRegistry, **kwargs) -> RegistryClient:
    return RegistryClient(transport=httpx.MockTransport(server), **kwargs)


def _manifest() -> Manifest:
    raw = json.dumps({"schemaVersion": 2, "mediaType": media.OCI_MANIFEST, "layers": []}).encode()
    return Manifest(media_type=media.OCI_MANIFEST, raw=raw)


@pytest.fixture
def repo() -> Repository:
    return Repository(registry="registry.example.com", repository="org/app")


def test_get_manifest__exchanges_credentials_for_a_token(repo):
    server = FakeRegistry(token="tok")
    manifest = _manifest()
    server.manifests[manifest.digest] = (manifest.media_type, manifest.raw)

    keychain = StaticKeychain(credentials={"registry.example.com": Credentials(username="u", password="p")})
    client = _client(server, keychain=keychain)

    compare(client.get_manifest(repo.digest(manifest.digest)), manifest)

    token_request = server.requests[1]
    compare(token_request.url.params.get_list("scope"), ["repository:org/app:pull"])
    compare(token_request.url.params["service"], "registry.example.com")
    compare(token_request.headers["Authorization"].startswith("Basic "), True)

    # the token is reused
    client.get_manifest(repo.digest(manifest.digest))
    compare(len(server.requests), 4)


def test_get_manifest__digest_mismatch_raises_RegistryError(repo):
    server = FakeRegistry()
    manifest = _manifest()
    other = "sha256:" + "0" * 64
    server.manifests[other] = (manifest.media_type, manifest.raw)

    with ShouldRaise(RegistryError):
        _client(server).get_manifest(repo.digest(other))


def test_get_manifest__media_type_from_body(repo):
    server = FakeRegistry()
    manifest = _manifest()
    server.manifests["latest"] = ("application/json", manifest.raw)

    fetched = _client(server).get_manifest(repo.tag("latest"))

    compare(fetched.media_type, media.OCI_MANIFEST)


def test_get_manifest__retries_transient_errors(repo):
    server = FakeRegistry(failures=1)
    manifest = _manifest()
    server.manifests[manifest.digest] = (manifest.media_type, manifest.raw)

    compare(_client(server, retries=2).get_manifest(repo.digest(manifest.digest)), manifest)
    compare(len(server.requests), 2)


def test_get_manifest__not_found_is_not_retried(repo):
    server = FakeRegistry()

    with ShouldRaise(RegistryError) as exc:
        _client(server, retries=3).get_manifest(repo.tag("missing"))

    compare(exc.raised.status, 404)
    compare(len(server.requests), 1)


def test_upload_blob__monolithic(repo):
    server = FakeRegistry()
    data = b"some layer content"

    _client(server).upload_blob(repo, sha256_digest(data), len(data), io.BytesIO(data))

    compare(server.blobs, {sha256_digest(data): data})
    compare([request.method for request in server.requests], ["HEAD", "POST", "PUT"])


def test_upload_blob__chunked(repo):
    server = FakeRegistry()
    data = bytes(range(256)) * 4

    with mock.patch("imagetest.registry.client.MONOLITHIC_UPLOAD_LIMIT", 100), mock.patch(
        "imagetest.registry.client.UPLOAD_CHUNK_SIZE", 400
    ):
        _client(server).upload_blob(repo, sha256_digest(data), len(data), io.BytesIO(data))

    compare(server.blobs, {sha256_digest(data): data})

    patches = [request for request in server.requests if request.method == "PATCH"]
    compare(
        [request.headers["Content-Range"] for request in patches],
        ["0-399", "400-799", "800-1023"],
    )


def test_upload_blob__existing_blob_is_skipped(repo):
    server = FakeRegistry()
    data = b"already there"
    server.blobs[sha256_digest(data)] = data

    _client(server).upload_blob(repo, sha256_digest(data), len(data), io.BytesIO(data))

    compare([request.method for request in server.requests], ["HEAD"])


def test_copy_blob__mounts_within_a_registry(repo):
    server = FakeRegistry()
    data = b"base layer"
    server.blobs[sha256_digest(data)] = data

    source = Repository(registry="registry.example.com", repository="org/base")
    target = repo.child("imagetest")

    with mock.patch.object(RegistryClient, "blob_exists", return_value=False):
        _client(server).copy_blob(source, target, sha256_digest(data), len(data))

    mount = server.requests[-1]
    compare(mount.method, "POST")
    compare(mount.url.params["from"], "org/base")


def test_put_manifest__returns_digest_reference(repo):
    server = FakeRegistry()
    manifest = _manifest()

    ref = _client(server).put_manifest(repo, manifest)

    compare(ref, repo.digest(manifest.digest))
    compare(server.manifests[manifest.digest], (media.OCI_MANIFEST, manifest.raw))


def test_local_registries_use_plain_http():
    server = FakeRegistry()
    manifest = _manifest()
    server.manifests[manifest.digest] = (manifest.media_type, manifest.raw)

    ref = parse_reference(f"localhost:5000/app@{manifest.digest}")
    _client(server).get_manifest(ref)

    compare(server.requests[0].url.scheme, "http")
