"""Driver running each test as a pod of a single-node k3s cluster started in
a docker container."""
import functools
from pathlib import Path
from typing import Any, Dict, List, Optional

import docker
import yaml
from attrs import define, field
from docker.models.containers import Container
from kubernetes import client as k8s
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from imagetest.core.deadline import Deadline
from imagetest.core.errors import DriverSetupError, ImagetestError
from imagetest.core.reference import Reference
from imagetest.drivers.base import Driver, NotReady, wait_until
from imagetest.drivers.docker import (
    docker_client,
    exec_checked,
    published_port,
    put_files,
    remove_container,
    remove_labeled_volumes,
    remove_network,
    run_labels,
)
from imagetest.drivers.pod import DEFAULT_NAMESPACE, PodResources, PodRunner, PodVolume
from imagetest.registry.auth import CredentialsError, Keychain
from imagetest.utils import log

DEFAULT_IMAGE = "cgr.dev/chainguard/k3s:latest-dev"

CONFIG_PATH = "/etc/rancher/k3s/config.yaml"
REGISTRIES_PATH = "/etc/rancher/k3s/registries.yaml"
KUBECONFIG_PATH = "/etc/rancher/k3s/k3s.yaml"
TLS_DIR = "/etc/rancher/k3s/tls"

API_PORT = "6443/tcp"

# name the host is reachable at from the cluster container and, once the
# CoreDNS hook ran, from the pods
HOST_ALIAS = "host.docker.internal"

COREDNS_HOOK = f"""set -e
ip=$(awk '/{HOST_ALIAS}/ {{print $1; exit}}' /etc/hosts)
cat <<EOF | kubectl apply -f -
apiVersion: v1
kind: ConfigMap
metadata:
  name: coredns-custom
  namespace: kube-system
data:
  hostdocker.server: |
    {HOST_ALIAS}:53 {{
      hosts {{
        $ip {HOST_ALIAS}
        fallthrough
      }}
    }}
EOF
kubectl -n kube-system rollout restart deployment coredns
kubectl -n kube-system rollout status deployment coredns --timeout=120s
"""


@define(frozen=True, kw_only=True)
class RegistryAuthOptions:
    """Credentials of a registry.

    Arguments:
        username: the user name.
        password: the password or access token.
        auth: base64 encoded `username:password`.
    """

    username: str = ""
    password: str = field(default="", repr=False)
    auth: str = field(default="", repr=False)


@define(frozen=True, kw_only=True)
class RegistryTlsOptions:
    """TLS material used to reach a registry, as local file paths.

    Arguments:
        cert_file: client certificate.
        key_file: client key.
        ca_file: certificate authority of the registry.
    """

    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    ca_file: Optional[str] = None


@define(frozen=True, kw_only=True)
class RegistryMirrorOptions:
    """Endpoints serving the content of a registry.

    Arguments:
        endpoints: mirror URLs, tried in order.
    """

    endpoints: List[str] = field(factory=list)


@define(frozen=True, kw_only=True)
class RegistryOptions:
    """How the cluster reaches a registry."""

    auth: Optional[RegistryAuthOptions] = None
    tls: Optional[RegistryTlsOptions] = None
    mirrors: Optional[RegistryMirrorOptions] = None


@define(frozen=True, kw_only=True)
class HooksOptions:
    """Commands run in the cluster container.

    Arguments:
        post_start: shell commands run, in order, once the cluster is ready.
    """

    post_start: List[str] = field(factory=list)


@define(frozen=True, kw_only=True)
class VolumeOptions:
    """A local path made available to the test pods.

    Arguments:
        source: path on the local machine.
        destination: path in the cluster container and in the test pods.
        read_only: mount without write access.
    """

    source: str
    destination: str
    read_only: bool = False


@define(frozen=True, kw_only=True)
class K3sInDockerOptions:
    """Configuration of the k3s-in-docker driver.

    Arguments:
        image: the k3s image.
        cni: keep the builtin CNI (flannel).
        traefik: keep the builtin ingress controller.
        metrics_server: keep the builtin metrics server.
        network_policy: keep the builtin network policy controller.
        snapshotter: containerd snapshotter, forced to `native` on workstations.
        registries: registry configuration keyed by registry host.
        hooks: commands run in the cluster container.
        resources: resources of the test pods.
        envs: environment variables set in the test containers.
        volumes: local paths made available to the test pods.
        kubeconfig_path: where to export the cluster's kubeconfig.
        namespace: namespace of the test pods.
    """

    image: str = DEFAULT_IMAGE
    cni: bool = True
    traefik: bool = False
    metrics_server: bool = False
    network_policy: bool = False
    snapshotter: str = "overlayfs"
    registries: Dict[str, RegistryOptions] = field(factory=dict)
    hooks: HooksOptions = field(factory=HooksOptions)
    resources: PodResources = field(factory=PodResources)
    envs: Dict[str, str] = field(factory=dict)
    volumes: List[VolumeOptions] = field(factory=list)
    kubeconfig_path: Optional[str] = None
    namespace: str = DEFAULT_NAMESPACE


def k3s_config(options: K3sInDockerOptions, workstation: bool) -> Dict[str, Any]:
    """The content of the k3s `config.yaml`."""
    disable = []
    if not options.traefik:
        disable.append("traefik")
    if not options.metrics_server:
        disable.append("metrics-server")

    config: Dict[str, Any] = {
        "tls-san": ["127.0.0.1", "localhost", HOST_ALIAS],
        "write-kubeconfig-mode": "0644",
        "snapshotter": "native" if workstation else options.snapshotter,
    }

    if disable:
        config["disable"] = disable

    if not options.network_policy:
        config["disable-network-policy"] = True

    if not options.cni:
        config["flannel-backend"] = "none"

    return config


def local_mirror(registry: str) -> str:
    """The endpoint reaching a registry of this machine from the cluster."""
    _, _, port = registry.rpartition(":")
    if not port.isdigit():
        port = "80"

    return f"http://{HOST_ALIAS}:{port}"


def tls_paths(registry: str, tls: RegistryTlsOptions) -> Dict[str, str]:
    """Maps the local TLS files of a registry to their path in the cluster."""
    base = f"{TLS_DIR}/{registry.replace(':', '_')}"
    paths = {}

    for key, name in (("cert_file", "cert.pem"), ("key_file", "key.pem"), ("ca_file", "ca.pem")):
        local = getattr(tls, key)
        if local:
            paths[key] = f"{base}/{name}"

    return paths


def registries_config(
    options: K3sInDockerOptions,
    keychain: Keychain,
    registries: List[str],
    local_registry: Optional[str] = None,
) -> Dict[str, Any]:
    """The content of the k3s `registries.yaml`.

    Credentials come from the driver's configuration first, then from the
    keychain.

    Arguments:
        options: the driver's configuration.
        keychain: resolves the credentials of the registries.
        registries: registries the test pods pull from.
        local_registry: registry of this machine to reach through a mirror.
    """
    mirrors: Dict[str, Any] = {}
    configs: Dict[str, Any] = {}

    for registry in registries:
        creds = keychain.resolve(registry)
        if creds is None or creds.is_empty():
            continue

        if creds.identity_token:
            configs[registry] = {"auth": {"identity_token": creds.identity_token}}
        else:
            configs[registry] = {"auth": {"username": creds.username, "password": creds.password}}

    for registry, registry_options in options.registries.items():
        if registry_options.mirrors is not None:
            mirrors[registry] = {"endpoint": list(registry_options.mirrors.endpoints)}

        entry = configs.setdefault(registry, {})

        if registry_options.auth is not None:
            auth = registry_options.auth
            if auth.auth:
                entry["auth"] = {"auth": auth.auth}
            else:
                entry["auth"] = {"username": auth.username, "password": auth.password}

        if registry_options.tls is not None:
            entry["tls"] = tls_paths(registry, registry_options.tls)

        if not entry:
            del configs[registry]

    if local_registry is not None:
        mirrors.setdefault(local_registry, {"endpoint": [local_mirror(local_registry)]})

    return {"mirrors": mirrors, "configs": configs}


def rewrite_kubeconfig(raw: str, port: int) -> Dict[str, Any]:
    """Points the kubeconfig of the cluster to the published API port."""
    kubeconfig = yaml.safe_load(raw)

    for cluster in kubeconfig.get("clusters") or []:
        cluster["cluster"]["server"] = f"https://127.0.0.1:{port}"

    return kubeconfig


def _node_ready(node: Any) -> bool:
    for condition in (node.status.conditions or []):
        if condition.type == "Ready":
            return condition.status == "True"

    return False


@define(kw_only=True)
class K3sInDocker(Driver):
    """Runs the tests as pods of a k3s cluster living in a privileged
    container.

    Arguments:
        options: the driver's configuration.
    """

    options_type = K3sInDockerOptions

    options: K3sInDockerOptions
    container: Optional[Container] = field(default=None, init=False)
    api: Optional[k8s.ApiClient] = field(default=None, init=False)
    pods: Optional[PodRunner] = field(default=None, init=False)

    @classmethod
    def spec_name(cls) -> str:
        return "k3s_in_docker"

    @property
    def name(self) -> str:
        """Name of the cluster container."""
        return f"imagetest-{self.ctx.run_id}"

    @property
    def local_registry(self) -> Optional[str]:
        """The registry of this machine the test images are pushed to, if any."""
        if self.ctx.target_repo.is_local:
            return self.ctx.target_repo.registry

        return None

    def _files(self) -> Dict[str, bytes]:
        files = {
            CONFIG_PATH: yaml.safe_dump(k3s_config(self.options, self.ctx.workstation)).encode(),
            REGISTRIES_PATH: yaml.safe_dump(
                registries_config(
                    self.options, self.ctx.keychain, self.ctx.registries, self.local_registry
                )
            ).encode(),
        }

        for registry, registry_options in self.options.registries.items():
            if registry_options.tls is None:
                continue

            for key, path in tls_paths(registry, registry_options.tls).items():
                files[path] = Path(getattr(registry_options.tls, key)).read_bytes()

        return files

    def _create(self):
        client = docker_client()
        labels = run_labels(self.ctx.run_id)

        client.images.pull(self.options.image)

        client.networks.create(self.name, labels=labels)
        self.teardowns.push(f"remove network {self.name}", lambda: remove_network(self.name))

        client.volumes.create(f"{self.name}-k3s", labels=labels)
        self.teardowns.push("remove k3s volumes", lambda: remove_labeled_volumes(self.ctx.run_id))

        volumes = {f"{self.name}-k3s": {"bind": "/var/lib/rancher/k3s", "mode": "rw"}}
        for volume in self.options.volumes:
            volumes[volume.source] = {
                "bind": volume.destination,
                "mode": "ro" if volume.read_only else "rw",
            }

        self.container = client.containers.create(
            self.options.image,
            command=["server"],
            name=self.name,
            labels=labels,
            privileged=True,
            detach=True,
            network=self.name,
            ports={API_PORT: ("127.0.0.1", None)},
            tmpfs={"/run": "", "/tmp": ""},
            extra_hosts={HOST_ALIAS: "host-gateway"},
            volumes=volumes,
        )
        self.teardowns.push(
            f"remove container {self.name}", functools.partial(remove_container, self.container)
        )

        put_files(self.container, self._files(), mode=0o600)
        self.container.start()

    def _kubeconfig(self) -> Dict[str, Any]:
        self.container.reload()
        if self.container.status != "running":
            raise DriverSetupError(f"cluster container {self.name} is {self.container.status}")

        result = self.container.exec_run(["cat", KUBECONFIG_PATH])
        if result.exit_code != 0:
            raise NotReady(f"{KUBECONFIG_PATH} not written yet")

        return rewrite_kubeconfig(result.output.decode("utf-8"), published_port(self.container, API_PORT))

    def _ready(self):
        core = k8s.CoreV1Api(self.api)

        try:
            nodes = core.list_node().items
            pods = core.list_namespaced_pod("kube-system").items

        except (ApiException, HTTPError) as exc:
            raise NotReady(f"cluster API not available: {exc}") from exc

        if not nodes or not all(_node_ready(node) for node in nodes):
            raise NotReady("nodes are not ready")

        pending = [pod.metadata.name for pod in pods if pod.status.phase not in ("Running", "Succeeded")]
        if not pods or pending:
            raise NotReady(f"system pods not running: {', '.join(pending)}")

    def _hook(self, hook: str):
        try:
            exec_checked(self.container, ["sh", "-c", hook])
        except DriverSetupError as exc:
            raise DriverSetupError(f"post start hook failed: {exc}") from exc

    def setup(self, deadline: Deadline):
        try:
            self._provision(deadline)

        except ImagetestError:
            raise

        except (
            docker.errors.DockerException,
            ApiException,
            HTTPError,
            ConfigException,
            CredentialsError,
            OSError,
        ) as exc:
            raise DriverSetupError(f"failed to start cluster {self.name}: {exc}") from exc

    def _provision(self, deadline: Deadline):
        self._create()

        kubeconfig = wait_until(deadline, f"kubeconfig of {self.name}", self._kubeconfig)

        if self.options.kubeconfig_path:
            Path(self.options.kubeconfig_path).write_text(yaml.safe_dump(kubeconfig), encoding="utf-8")
            log(f"kubeconfig written to {self.options.kubeconfig_path}")

        self.api = k8s_config.new_client_from_config_dict(kubeconfig)
        self.teardowns.push("close kubernetes client", self.api.close)

        wait_until(deadline, f"cluster {self.name}", self._ready, interval=2.0)
        log(f"k3s cluster ready id={self.ctx.run_id}")

        if self.local_registry is not None:
            self._hook(COREDNS_HOOK)

        for hook in self.options.hooks.post_start:
            deadline.check("post start hooks")
            self._hook(hook)

        self.pods = PodRunner(
            api=self.api,
            run_id=self.ctx.run_id,
            driver=self.spec_name(),
            keychain=self.ctx.keychain,
            registries=self.ctx.registries,
            namespace=self.options.namespace,
            resources=self.options.resources,
            envs=self.options.envs,
            volumes=[
                PodVolume(
                    name=f"volume-{index}",
                    host_path=volume.destination,
                    mount_path=volume.destination,
                    read_only=volume.read_only,
                )
                for index, volume in enumerate(self.options.volumes)
            ],
        )
        self.pods.preflight()

    def run(self, deadline: Deadline, ref: Reference):
        if self.pods is None:
            raise DriverSetupError("k3s-in-docker driver has not been set up")

        self.pods.run(deadline, ref)
