"""Driver running each test with `docker run` inside a docker-in-docker
sandbox."""
import functools
import json
from typing import Dict, List, Optional

import docker
from attrs import define, field
from docker.models.containers import Container

from imagetest.core.deadline import Deadline
from imagetest.core.errors import DeadlineExceeded, DriverSetupError, TestError
from imagetest.core.reference import Reference
from imagetest.drivers.base import Driver, NotReady, wait_until
from imagetest.drivers.docker import (
    ExecStream,
    docker_client,
    put_files,
    remove_container,
    remove_labeled_volumes,
    remove_network,
    run_labels,
)
from imagetest.registry.auth import CredentialsError, docker_config
from imagetest.utils import log

DEFAULT_IMAGE = "cgr.dev/chainguard/docker-dind:latest"

# where the user's mounts are placed in the sandbox before being mounted in the test
MOUNTS_ROOT = "/mnt/imagetest"

# keeps the networks of the inner daemon away from the common docker ranges
DEFAULT_ADDRESS_POOL = {"base": "172.30.0.0/16", "size": 24}


@define(frozen=True, kw_only=True)
class MountOptions:
    """A local path mounted in the test containers.

    Arguments:
        source: path on the local machine.
        destination: path in the test container.
        read_only: mount without write access.
    """

    source: str
    destination: str
    read_only: bool = False


@define(frozen=True, kw_only=True)
class ResourcesOptions:
    """Resource limits of the test containers.

    Arguments:
        memory: memory limit, i.e. `2g`.
        cpus: number of CPUs, i.e. `1.5`.
    """

    memory: Optional[str] = None
    cpus: Optional[str] = None


@define(frozen=True, kw_only=True)
class DockerInDockerOptions:
    """Configuration of the docker-in-docker driver.

    Arguments:
        image: the docker-in-docker image of the sandbox.
        mirrors: registry mirrors used by the inner daemon.
        resources: limits of the test containers.
        envs: environment variables set in the test containers, on top of
            the image's ones.
        mounts: local paths mounted in the test containers.
        stderr_tail: kilobytes of standard error quoted when a test fails.
    """

    image: str = DEFAULT_IMAGE
    mirrors: List[str] = field(factory=list)
    resources: ResourcesOptions = field(factory=ResourcesOptions)
    envs: Dict[str, str] = field(factory=dict)
    mounts: List[MountOptions] = field(factory=list)
    stderr_tail: int = 4


def daemon_config(mirrors: List[str], insecure: List[str]) -> Dict:
    """The `daemon.json` of the inner docker daemon."""
    config: Dict = {"default-address-pools": [dict(DEFAULT_ADDRESS_POOL)]}

    if mirrors:
        config["registry-mirrors"] = list(mirrors)

    if insecure:
        config["insecure-registries"] = list(insecure)

    return config


def sandbox_mount(index: int) -> str:
    """Path of a user mount inside the sandbox."""
    return f"{MOUNTS_ROOT}/{index}"


def run_args(
    name: str,
    ref: Reference,
    options: DockerInDockerOptions,
    host_network: bool = False,
) -> List[str]:
    """The `docker run` command executed in the sandbox for a test."""
    args = ["docker", "run", "--rm", "--name", name]

    if options.resources.memory:
        args += ["--memory", options.resources.memory]

    if options.resources.cpus:
        args += ["--cpus", options.resources.cpus]

    if host_network:
        args += ["--network", "host"]

    for key, value in sorted(options.envs.items()):
        args += ["--env", f"{key}={value}"]

    for index, mount in enumerate(options.mounts):
        spec = f"{sandbox_mount(index)}:{mount.destination}"
        if mount.read_only:
            spec += ":ro"

        args += ["--volume", spec]

    args.append(str(ref))

    return args


@define(kw_only=True)
class DockerInDocker(Driver):
    """Runs the tests in a privileged container hosting its own docker
    daemon.

    Arguments:
        options: the driver's configuration.
    """

    options_type = DockerInDockerOptions

    options: DockerInDockerOptions
    container: Optional[Container] = field(default=None, init=False)
    runs: int = field(default=0, init=False)

    @classmethod
    def spec_name(cls) -> str:
        return "docker_in_docker"

    @property
    def name(self) -> str:
        """Name of the sandbox container."""
        return f"imagetest-{self.ctx.run_id}"

    @property
    def host_network(self) -> bool:
        """True when the test images live on a registry of this machine."""
        return self.ctx.target_repo.is_local

    def setup(self, deadline: Deadline):
        client = docker_client()
        labels = run_labels(self.ctx.run_id)

        try:
            client.images.pull(self.options.image)

            network = None
            if not self.host_network:
                client.networks.create(self.name, labels=labels)
                self.teardowns.push(f"remove network {self.name}", lambda: remove_network(self.name))
                network = self.name

            client.volumes.create(f"{self.name}-docker", labels=labels)
            self.teardowns.push(
                "remove docker volumes", lambda: remove_labeled_volumes(self.ctx.run_id)
            )

            volumes = {f"{self.name}-docker": {"bind": "/var/lib/docker", "mode": "rw"}}
            for index, mount in enumerate(self.options.mounts):
                volumes[mount.source] = {
                    "bind": sandbox_mount(index),
                    "mode": "ro" if mount.read_only else "rw",
                }

            self.container = client.containers.create(
                self.options.image,
                name=self.name,
                labels=labels,
                privileged=True,
                detach=True,
                network=network,
                network_mode="host" if self.host_network else None,
                volumes=volumes,
            )
            self.teardowns.push(
                f"remove container {self.name}", functools.partial(remove_container, self.container)
            )

            insecure = [self.ctx.target_repo.registry] if self.host_network else []
            put_files(
                self.container,
                {
                    "/etc/docker/daemon.json": json.dumps(daemon_config(self.options.mirrors, insecure)).encode(),
                    "/root/.docker/config.json": json.dumps(
                        docker_config(self.ctx.keychain, self.ctx.registries)
                    ).encode(),
                },
                mode=0o600,
            )

            self.container.start()

        except (docker.errors.DockerException, CredentialsError) as exc:
            raise DriverSetupError(f"failed to start sandbox {self.name}: {exc}") from exc

        try:
            wait_until(deadline, f"docker daemon in {self.name}", self._ping)
        except docker.errors.DockerException as exc:
            raise DriverSetupError(f"failed to reach docker daemon in {self.name}: {exc}") from exc

        log(f"docker-in-docker sandbox ready id={self.ctx.run_id}")

    def _ping(self):
        self.container.reload()
        if self.container.status != "running":
            raise DriverSetupError(f"sandbox {self.name} is {self.container.status}")

        result = self.container.exec_run(["docker", "info", "--format", "{{.ID}}"])
        if result.exit_code != 0:
            raise NotReady((result.output or b"").decode("utf-8", errors="replace").strip())

    def run(self, deadline: Deadline, ref: Reference):
        if self.container is None:
            raise DriverSetupError("docker-in-docker driver has not been set up")

        self.runs += 1
        name = f"{self.name}-{self.runs}"
        prefix = f"[{self.ctx.run_id}/{self.runs}]"

        stream = ExecStream(
            self.container,
            run_args(name, ref, self.options, host_network=self.host_network),
            on_stdout=lambda line: log(f"{prefix} {line}"),
            on_stderr=lambda line: log(f"{prefix} {line}"),
            stderr_limit=self.options.stderr_tail * 1024,
        )

        try:
            stream.start()
            completed, exit_code = stream.wait(deadline)

            if not completed:
                log(f"killing test container {name}")
                self.container.exec_run(["docker", "kill", name])
                stream.join(10)

        except docker.errors.DockerException as exc:
            raise TestError(f"failed to run test container: {exc}", ref=str(ref)) from exc

        if not completed:
            if deadline.cancelled():
                raise DeadlineExceeded("test cancelled", ref=str(ref))

            raise DeadlineExceeded("test did not complete before its timeout", ref=str(ref))

        if exit_code != 0:
            raise TestError(
                f"container exited with code {exit_code}: {stream.stderr.text().strip()}",
                exit_code=exit_code,
                ref=str(ref),
            )

