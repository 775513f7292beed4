"""Layers appended to test images, either referenced from a registry or built
from local files."""
import gzip
import hashlib
import os
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import IO, Any, Dict, Iterator, Optional, Tuple

from attrs import define, evolve, field

from imagetest.core.errors import ImageAssemblyError
from imagetest.core.reference import Repository
from imagetest.registry import media

_READ_SIZE = 1024 * 1024


@define(frozen=True, kw_only=True)
class Layer:
    """A gzip compressed tarball part of an image.

    Exactly one of `source` and `path` is set.

    Arguments:
        media_type: the layer's media type.
        digest: digest of the compressed content.
        size: size in bytes of the compressed content.
        diff_id: digest of the uncompressed content.
        source: repository where the layer can be fetched from.
        path: local file holding the compressed content.
        annotations: annotations of the layer descriptor.
    """

    media_type: str
    digest: str
    size: int
    diff_id: str
    source: Optional[Repository] = None
    path: Optional[Path] = None
    annotations: Dict[str, str] = field(factory=dict)

    def descriptor(self) -> Dict[str, Any]:
        """The OCI descriptor referencing this layer."""
        desc: Dict[str, Any] = {
            "mediaType": self.media_type,
            "size": self.size,
            "digest": self.digest,
        }

        if self.annotations:
            desc["annotations"] = dict(self.annotations)

        return desc

    def with_media_type(self, media_type: str) -> "Layer":
        """Gets the same layer with a different media type."""
        if media_type == self.media_type:
            return self

        return evolve(self, media_type=media_type)


class _HashingWriter:
    """Forwards writes to a file object while computing their digest."""

    def __init__(self, fileobj: IO[bytes]):
        self._fileobj = fileobj
        self._sha = hashlib.sha256()
        self.size = 0

    def write(self, data: bytes) -> int:
        self._sha.update(data)
        self.size += len(data)

        return self._fileobj.write(data)

    def flush(self):
        self._fileobj.flush()

    @property
    def digest(self) -> str:
        return f"sha256:{self._sha.hexdigest()}"


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""

    return info


def _walk(source: Path) -> Iterator[Tuple[Path, PurePosixPath]]:
    """Yields all the paths under `source`, sorted, with their relative path."""
    for root, dirs, files in os.walk(source):
        dirs.sort()

        base = Path(root)
        rel = PurePosixPath(base.relative_to(source).as_posix())

        for name in sorted(dirs + files):
            yield base / name, rel / name


def _parents(target: PurePosixPath) -> Iterator[PurePosixPath]:
    for parent in reversed(target.parents):
        if str(parent) not in ("", "."):
            yield parent

    yield target


def write_tarball(source: Path, target: str, fileobj: IO[bytes]) -> Tuple[str, str, int]:
    """Writes a reproducible gzip tarball placing `source` under `target`.

    Entries are sorted and stripped of timestamps and ownership, so the same
    files always produce the same digest.

    Arguments:
        source: local file or directory.
        target: absolute path where the content is placed in the image.
        fileobj: where the compressed tarball is written.

    Returns:
        The digest of the compressed content, the digest of the uncompressed
        content and the compressed size.
    """
    compressed = _HashingWriter(fileobj)
    target_path = PurePosixPath(target.strip("/") or ".")

    with gzip.GzipFile(filename="", mode="wb", fileobj=compressed, mtime=0) as gz:
        uncompressed = _HashingWriter(gz)

        with tarfile.open(fileobj=uncompressed, mode="w|", format=tarfile.PAX_FORMAT) as tar:
            if str(target_path) != ".":
                for parent in _parents(target_path):
                    info = _normalize(tarfile.TarInfo(str(parent)))
                    info.type = tarfile.DIRTYPE
                    info.mode = 0o755
                    tar.addfile(info)

            if source.is_dir():
                entries = _walk(source)
            else:
                entries = iter([(source, PurePosixPath(source.name))])

            for path, rel in entries:
                info = _normalize(tar.gettarinfo(str(path), arcname=str(target_path / rel)))

                if info.isfile():
                    with open(path, "rb") as content:
                        tar.addfile(info, content)
                else:
                    tar.addfile(info)

    return compressed.digest, uncompressed.digest, compressed.size


def new_layer_from_path(source: Path | str, target: str, directory: Path | str) -> Layer:
    """Builds a layer containing local files.

    Arguments:
        source: local file or directory to add.
        target: absolute path where the content is placed in the image.
        directory: where the compressed tarball is stored until it is pushed.

    Raises:
        ImageAssemblyError: if the source does not exist.
    """
    source = Path(source)
    if not source.exists():
        raise ImageAssemblyError(f"content {source} does not exist")

    fd, name = tempfile.mkstemp(suffix=".tar.gz", dir=directory)

    with os.fdopen(fd, "wb") as fileobj:
        digest, diff_id, size = write_tarball(source, target, fileobj)

    return Layer(
        media_type=media.OCI_LAYER,
        digest=digest,
        size=size,
        diff_id=diff_id,
        path=Path(name),
    )


def layer_from_file(path: Path | str) -> Layer:
    """Creates a layer from an existing gzip tarball.

    Arguments:
        path: the tarball's path.
    """
    path = Path(path)
    compressed = hashlib.sha256()
    uncompressed = hashlib.sha256()

    with open(path, "rb") as fileobj:
        for chunk in iter(lambda: fileobj.read(_READ_SIZE), b""):
            compressed.update(chunk)

    with gzip.open(path, "rb") as fileobj:
        for chunk in iter(lambda: fileobj.read(_READ_SIZE), b""):
            uncompressed.update(chunk)

    return Layer(
        media_type=media.OCI_LAYER,
        digest=f"sha256:{compressed.hexdigest()}",
        size=path.stat().st_size,
        diff_id=f"sha256:{uncompressed.hexdigest()}",
        path=path,
    )
