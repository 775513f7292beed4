"""Helpers shared by the drivers running containers on the local docker
daemon."""
import functools
import io
import tarfile
import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import docker
from docker.models.containers import Container

from imagetest.core.deadline import Deadline
from imagetest.core.errors import DriverSetupError

# label set on every docker resource, its value is the run id
RUN_LABEL = "dev.chainguard.imagetest.run"


@functools.cache
def docker_client() -> docker.DockerClient:
    """Gets the client of the local docker daemon."""
    return docker.from_env()


def run_labels(run_id: str) -> Dict[str, str]:
    """The labels identifying the resources of a run."""
    return {RUN_LABEL: run_id, "dev.chainguard.imagetest": "true"}


def archive(files: Dict[str, bytes], mode: int = 0o644) -> bytes:
    """Packs files in a tarball suitable for `put_archive` at `/`.

    Arguments:
        files: content keyed by absolute path.
        mode: permissions of every file.
    """
    buf = io.BytesIO()

    with tarfile.open(fileobj=buf, mode="w") as tar:
        for path, content in sorted(files.items()):
            info = tarfile.TarInfo(path.lstrip("/"))
            info.size = len(content)
            info.mode = mode
            tar.addfile(info, io.BytesIO(content))

    return buf.getvalue()


def put_files(container: Container, files: Dict[str, bytes], mode: int = 0o644):
    """Copies files into a container, created or running.

    Raises:
        DriverSetupError: if the files cannot be copied.
    """
    if not container.put_archive("/", archive(files, mode)):
        raise DriverSetupError(f"failed to copy {', '.join(sorted(files))} into {container.name}")


def exec_checked(container: Container, cmd: Sequence[str]) -> str:
    """Runs a command in a container and returns its output.

    Raises:
        DriverSetupError: if the command exits with a non-zero code.
    """
    result = container.exec_run(list(cmd))
    output = (result.output or b"").decode("utf-8", errors="replace")

    if result.exit_code != 0:
        raise DriverSetupError(
            f"`{' '.join(cmd)}` exited with code {result.exit_code} in {container.name}: {output.strip()}"
        )

    return output


class TailBuffer:
    """Keeps the last `limit` bytes written to it."""

    def __init__(self, limit: int):
        self._limit = limit
        self._data = bytearray()

    def write(self, data: bytes):
        self._data.extend(data)

        if len(self._data) > self._limit:
            del self._data[: len(self._data) - self._limit]

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


def _lines(
    pending: bytes,
    chunk: Optional[bytes],
    emit: Callable[[str], None],
) -> bytes:
    if not chunk:
        return pending

    data = pending + chunk
    *complete, rest = data.split(b"\n")

    for line in complete:
        emit(line.decode("utf-8", errors="replace"))

    return rest


class ExecStream:
    """Runs a command in a container in the background, forwarding its output
    line by line.

    Arguments:
        container: where the command runs.
        cmd: the command.
        on_stdout: called with each line of the standard output.
        on_stderr: called with each line of the standard error.
        stderr_limit: bytes of standard error kept for error messages.
    """

    def __init__(
        self,
        container: Container,
        cmd: Sequence[str],
        on_stdout: Callable[[str], None],
        on_stderr: Callable[[str], None],
        stderr_limit: int = 4096,
    ):
        self._container = container
        self._cmd = list(cmd)
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._thread: Optional[threading.Thread] = None
        self._exec_id: Optional[str] = None
        self._error: Optional[BaseException] = None
        self.stderr = TailBuffer(stderr_limit)

    def start(self):
        """Starts the command."""
        api = self._container.client.api

        self._exec_id = api.exec_create(self._container.id, self._cmd)["Id"]
        output = api.exec_start(self._exec_id, stream=True, demux=True)

        self._thread = threading.Thread(target=self._pump, args=(output,), daemon=True)
        self._thread.start()

    def _pump(self, output):
        pending_out = b""
        pending_err = b""

        try:
            for stdout, stderr in output:
                pending_out = _lines(pending_out, stdout, self._on_stdout)

                if stderr:
                    self.stderr.write(stderr)
                pending_err = _lines(pending_err, stderr, self._on_stderr)

        except Exception as exc:  # pylint: disable=broad-except
            self._error = exc

        finally:
            if pending_out:
                self._on_stdout(pending_out.decode("utf-8", errors="replace"))
            if pending_err:
                self._on_stderr(pending_err.decode("utf-8", errors="replace"))

    def wait(self, deadline: Deadline) -> Tuple[bool, Optional[int]]:
        """Waits for the command to exit.

        Returns:
            Whether the command completed before the deadline, and its exit code.

        Raises:
            docker.errors.DockerException: if the output could not be read.
        """
        if self._thread is None:
            raise RuntimeError("exec has not been started")

        while self._thread.is_alive():
            if deadline.expired():
                return False, None

            self._thread.join(deadline.bound(0.5))

        if self._error is not None:
            cmd = " ".join(self._cmd)
            raise docker.errors.DockerException(f"output of `{cmd}` failed: {self._error}") from self._error

        return True, self._container.client.api.exec_inspect(self._exec_id)["ExitCode"]

    def join(self, timeout: float):
        """Waits for the output to be flushed after the command was killed."""
        if self._thread is not None:
            self._thread.join(timeout)


def remove_container(container: Container):
    """Removes a container and its anonymous volumes, even if running."""
    try:
        container.remove(force=True, v=True)
    except docker.errors.NotFound:
        pass


def remove_labeled_volumes(run_id: str):
    """Removes the volumes labeled with a run id."""
    for volume in docker_client().volumes.list(filters={"label": f"{RUN_LABEL}={run_id}"}):
        volume.remove(force=True)


def remove_network(name: str):
    """Removes a network if it still exists."""
    try:
        docker_client().networks.get(name).remove()
    except docker.errors.NotFound:
        pass


def published_port(container: Container, port: str) -> int:
    """Gets the host port a container port is published on.

    Arguments:
        container: the running container.
        port: the container port, i.e. `6443/tcp`.
    """
    container.reload()
    bindings: List[Dict[str, str]] = (container.ports or {}).get(port) or []

    if not bindings:
        raise DriverSetupError(f"port {port} of {container.name} is not published")

    return int(bindings[0]["HostPort"])
