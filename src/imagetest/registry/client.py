"""Client for the OCI distribution API used to pull base images and push test
images."""
import functools
import hashlib
import json
import re
import tempfile
import threading
from typing import IO, Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import httpx
from attrs import define, field
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from imagetest.core.errors import ImageAssemblyError
from imagetest.core.reference import Reference, Repository, is_local_registry
from imagetest.registry import media
from imagetest.registry.auth import Keychain
from imagetest.utils import log

# blobs up to this size are uploaded with a single request
MONOLITHIC_UPLOAD_LIMIT = 32 * 1024 * 1024

# size of each PATCH request of a chunked upload
UPLOAD_CHUNK_SIZE = 32 * 1024 * 1024

_READ_SIZE = 1024 * 1024

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(ImageAssemblyError):
    """Raised when a registry rejects a request.

    Arguments:
        status: the HTTP status code, if a response was received.
    """

    summary = "registry request failed"

    def __init__(
        self,
        detail: str,
        status: Optional[int] = None,
        summary: Optional[str] = None,
        ref: Optional[str] = None,
    ):
        super().__init__(detail, summary=summary, ref=ref)

        self.status = status

    @property
    def transient(self) -> bool:
        """True when retrying the request may succeed."""
        return self.status is not None and (self.status >= 500 or self.status == 429)


@define(frozen=True, kw_only=True)
class Manifest:
    """A manifest or an index as stored in a registry.

    Arguments:
        media_type: the manifest's media type.
        raw: the exact bytes, which the digest is computed from.
    """

    media_type: str
    raw: bytes = field(repr=False)

    @property
    def digest(self) -> str:
        """The content digest of the manifest."""
        return sha256_digest(self.raw)

    def json(self) -> Dict[str, Any]:
        """The decoded manifest."""
        return json.loads(self.raw)


def sha256_digest(data: bytes) -> str:
    """Computes the OCI digest of some content."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True

    return isinstance(exc, RegistryError) and exc.transient


def _parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    scheme, _, rest = header.strip().partition(" ")

    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


def _with_digest(location: str, digest: str) -> str:
    separator = "&" if "?" in location else "?"

    return f"{location}{separator}digest={digest}"


def _read_range(fileobj: IO[bytes], offset: int, length: int) -> Iterator[bytes]:
    fileobj.seek(offset)

    while length > 0:
        data = fileobj.read(min(_READ_SIZE, length))
        if not data:
            raise ImageAssemblyError(f"blob is shorter than expected, {length} bytes missing")

        length -= len(data)
        yield data


def _log_retry(state):
    log(f"retrying registry request attempt={state.attempt_number} error={state.outcome.exception()}")


class RegistryClient:
    """Talks to registries implementing the OCI distribution API.

    Requests use HTTP/2 when the registry supports it and are retried with
    exponential backoff on connection errors and 5xx responses.

    Arguments:
        keychain: resolves the credentials of each registry, anonymous access
            is used when it has none.
        timeout: timeout of each request in seconds.
        user_agent: sent with every request.
        retries: maximum number of attempts for each request.
        insecure: registries reached over plain HTTP. Local registries always are.
        transport: replaces the network transport of the HTTP client.
    """

    def __init__(
        self,
        keychain: Optional[Keychain] = None,
        timeout: float = 60.0,
        user_agent: str = "imagetest",
        retries: int = 5,
        insecure: Sequence[str] = (),
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._keychain = keychain
        self._retries = max(1, retries)
        self._insecure = set(insecure)
        self._tokens: Dict[Tuple[str, Tuple[str, ...]], str] = {}
        self._lock = threading.Lock()
        self._http = httpx.Client(
            http2=True,
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    def close(self):
        """Closes all the connections."""
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _url(self, repo: Repository, path: str) -> str:
        scheme = "http" if repo.registry in self._insecure or is_local_registry(repo.registry) else "https"

        return f"{scheme}://{repo.registry}/v2/{repo.repository}/{path}"

    def _retry(self, func: Callable[[], Any]) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self._retries),
            wait=wait_exponential(multiplier=0.5, max=10),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            reraise=True,
        )

        return retrying(func)

    def _authorize(self, registry: str, scopes: List[str], challenge: str) -> Optional[str]:
        scheme, params = _parse_challenge(challenge)
        creds = self._keychain.resolve(registry) if self._keychain is not None else None

        if scheme == "basic":
            return None if creds is None else f"Basic {creds.auth}"

        if scheme != "bearer" or "realm" not in params:
            raise RegistryError(f"unsupported authentication challenge {challenge!r} from {registry}")

        service = params.get("service", "")

        if creds is not None and creds.identity_token:
            resp = self._http.post(
                params["realm"],
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": creds.identity_token,
                    "service": service,
                    "scope": " ".join(scopes),
                    "client_id": "imagetest",
                },
            )

        else:
            auth = (creds.username, creds.password) if creds is not None and creds.username else None
            query = [("service", service)] + [("scope", scope) for scope in scopes]
            resp = self._http.get(params["realm"], params=query, auth=auth)

        if resp.status_code != 200:
            raise RegistryError(
                f"failed to get a token from {params['realm']}: {resp.status_code} {resp.text}",
                status=resp.status_code,
            )

        data = resp.json()
        token = data.get("token") or data.get("access_token")
        if not token:
            raise RegistryError(f"no token returned by {params['realm']}")

        return f"Bearer {token}"

    def _send(
        self,
        method: str,
        url: str,
        registry: str,
        scopes: List[str],
        headers: Optional[Dict[str, str]] = None,
        content: Optional[Callable[[], Any]] = None,
        stream: bool = False,
    ) -> httpx.Response:
        key = (registry, tuple(scopes))
        headers = dict(headers or {})

        with self._lock:
            token = self._tokens.get(key)

        if token is not None:
            headers["Authorization"] = token

        def send() -> httpx.Response:
            request = self._http.build_request(
                method, url, headers=headers, content=None if content is None else content()
            )
            return self._http.send(request, stream=stream)

        resp = send()

        if resp.status_code == 401 and "WWW-Authenticate" in resp.headers:
            resp.close()

            token = self._authorize(registry, scopes, resp.headers["WWW-Authenticate"])
            if token is None:
                raise RegistryError(f"no credentials found for {registry}", status=401)

            with self._lock:
                self._tokens[key] = token

            headers["Authorization"] = token
            resp = send()

        return resp

    def _check(self, resp: httpx.Response, what: str, expected: Sequence[int]):
        if resp.status_code in expected:
            return

        body = resp.read().decode("utf-8", errors="replace")
        resp.close()

        raise RegistryError(f"{what}: {resp.status_code} {body[:1024]}", status=resp.status_code)

    def get_manifest(self, ref: Reference) -> Manifest:
        """Fetches the manifest or index a reference points to.

        Raises:
            RegistryError: if the manifest cannot be fetched or does not match
                the digest of the reference.
        """
        repo = ref.repository

        def fetch() -> Manifest:
            resp = self._send(
                "GET",
                self._url(repo, f"manifests/{ref.identifier}"),
                repo.registry,
                [f"repository:{repo.repository}:pull"],
                headers={"Accept": media.ACCEPT},
            )
            self._check(resp, f"failed to get manifest {ref}", (200,))

            media_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
            return Manifest(media_type=media_type, raw=resp.content)

        manifest = self._retry(fetch)

        if not media_type_known(manifest):
            manifest = Manifest(media_type=manifest.json().get("mediaType", ""), raw=manifest.raw)

        if ref.is_digest and manifest.digest != ref.digest:
            raise RegistryError(f"manifest of {ref} has digest {manifest.digest}")

        return manifest

    def put_manifest(self, repo: Repository, manifest: Manifest, tag: Optional[str] = None) -> Reference:
        """Pushes a manifest, by digest unless a tag is given.

        Returns:
            The digest reference of the pushed manifest.
        """
        identifier = tag or manifest.digest

        def push():
            resp = self._send(
                "PUT",
                self._url(repo, f"manifests/{identifier}"),
                repo.registry,
                [f"repository:{repo.repository}:pull,push"],
                headers={"Content-Type": manifest.media_type},
                content=lambda: manifest.raw,
            )
            self._check(resp, f"failed to push manifest to {repo}", (200, 201))

        self._retry(push)

        return repo.digest(manifest.digest)

    def blob_exists(self, repo: Repository, digest: str) -> bool:
        """Checks if a repository already has a blob."""

        def head() -> bool:
            resp = self._send(
                "HEAD",
                self._url(repo, f"blobs/{digest}"),
                repo.registry,
                [f"repository:{repo.repository}:pull"],
            )

            if resp.status_code == 404:
                return False

            self._check(resp, f"failed to check blob {digest} in {repo}", (200,))
            return True

        return self._retry(head)

    def get_blob(self, repo: Repository, digest: str) -> bytes:
        """Fetches a small blob, like an image config, verifying its digest."""

        def fetch() -> bytes:
            resp = self._send(
                "GET",
                self._url(repo, f"blobs/{digest}"),
                repo.registry,
                [f"repository:{repo.repository}:pull"],
            )
            self._check(resp, f"failed to get blob {digest} from {repo}", (200,))

            return resp.content

        data = self._retry(fetch)

        if sha256_digest(data) != digest:
            raise RegistryError(f"blob {digest} from {repo} does not match its digest")

        return data

    def download_blob(self, repo: Repository, digest: str, fileobj: IO[bytes]):
        """Streams a blob into a file object, without holding it in memory."""

        def fetch():
            fileobj.seek(0)
            fileobj.truncate()

            resp = self._send(
                "GET",
                self._url(repo, f"blobs/{digest}"),
                repo.registry,
                [f"repository:{repo.repository}:pull"],
                stream=True,
            )

            try:
                self._check(resp, f"failed to get blob {digest} from {repo}", (200,))

                for chunk in resp.iter_bytes(_READ_SIZE):
                    fileobj.write(chunk)

            finally:
                resp.close()

        self._retry(fetch)
        fileobj.seek(0)

    def mount_blob(self, repo: Repository, digest: str, source: Repository) -> bool:
        """Asks the registry to link a blob from another repository.

        Returns:
            True if the blob has been mounted, False if it has to be uploaded.
        """
        if repo.registry != source.registry:
            return False

        def mount() -> bool:
            resp = self._send(
                "POST",
                self._url(repo, f"blobs/uploads/?mount={digest}&from={source.repository}"),
                repo.registry,
                [f"repository:{repo.repository}:pull,push", f"repository:{source.repository}:pull"],
            )
            self._check(resp, f"failed to mount blob {digest} into {repo}", (201, 202))

            return resp.status_code == 201

        return self._retry(mount)

    def _start_upload(self, repo: Repository) -> str:
        resp = self._send(
            "POST",
            self._url(repo, "blobs/uploads/"),
            repo.registry,
            [f"repository:{repo.repository}:pull,push"],
        )
        self._check(resp, f"failed to start upload to {repo}", (202,))

        return self._location(repo, resp)

    def _location(self, repo: Repository, resp: httpx.Response) -> str:
        location = resp.headers.get("Location")
        if not location:
            raise RegistryError(f"upload to {repo} returned no location")

        return urljoin(self._url(repo, ""), location)

    def upload_blob(self, repo: Repository, digest: str, size: int, fileobj: IO[bytes]):
        """Uploads a blob read from a seekable file object.

        Blobs larger than `MONOLITHIC_UPLOAD_LIMIT` are streamed in chunks, so
        that they never need to fit in memory.
        """
        if self.blob_exists(repo, digest):
            return

        scopes = [f"repository:{repo.repository}:pull,push"]
        octet = {"Content-Type": "application/octet-stream"}

        def upload():
            location = self._start_upload(repo)

            if size <= MONOLITHIC_UPLOAD_LIMIT:
                resp = self._send(
                    "PUT",
                    _with_digest(location, digest),
                    repo.registry,
                    scopes,
                    headers={**octet, "Content-Length": str(size)},
                    content=functools.partial(_read_range, fileobj, 0, size),
                )
                self._check(resp, f"failed to upload blob {digest} to {repo}", (201,))
                return

            offset = 0
            while offset < size:
                length = min(UPLOAD_CHUNK_SIZE, size - offset)
                resp = self._send(
                    "PATCH",
                    location,
                    repo.registry,
                    scopes,
                    headers={
                        **octet,
                        "Content-Length": str(length),
                        "Content-Range": f"{offset}-{offset + length - 1}",
                    },
                    content=functools.partial(_read_range, fileobj, offset, length),
                )
                self._check(resp, f"failed to upload chunk of blob {digest} to {repo}", (202,))

                location = self._location(repo, resp)
                offset += length

            resp = self._send(
                "PUT",
                _with_digest(location, digest),
                repo.registry,
                scopes,
                headers={"Content-Length": "0"},
            )
            self._check(resp, f"failed to commit blob {digest} to {repo}", (201,))

        self._retry(upload)

    def copy_blob(self, source: Repository, repo: Repository, digest: str, size: int):
        """Makes a blob of another repository available in `repo`.

        The blob is mounted when both repositories live on the same registry,
        otherwise it is streamed through a temporary file.
        """
        if self.blob_exists(repo, digest):
            return

        if self.mount_blob(repo, digest, source):
            return

        with tempfile.SpooledTemporaryFile(max_size=MONOLITHIC_UPLOAD_LIMIT) as buf:
            self.download_blob(source, digest, buf)
            self.upload_blob(repo, digest, size, buf)


def media_type_known(manifest: Manifest) -> bool:
    """Checks if the media type of a manifest is one imagetest handles."""
    return media.is_image(manifest.media_type) or media.is_index(manifest.media_type)
