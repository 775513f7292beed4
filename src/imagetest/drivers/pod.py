"""Runs test images as pods of a Kubernetes cluster."""
import base64
import json
import re
import threading
from typing import Any, Dict, List, Optional

from attrs import define, field
from kubernetes import client as k8s
from kubernetes import watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from imagetest.core.deadline import Deadline
from imagetest.core.errors import DeadlineExceeded, DriverSetupError, TestError
from imagetest.core.reference import Reference
from imagetest.registry.auth import CredentialsError, Keychain, docker_config
from imagetest.utils import log, warning

DEFAULT_NAMESPACE = "imagetest"
SERVICE_ACCOUNT = "imagetest"
CONTAINER_NAME = "sandbox"

# the container is waiting for a reason that will not go away on its own
_FATAL_WAITING_REASONS = ("InvalidImageName", "ImagePullBackOff", "CreateContainerConfigError")

# seconds between two checks of the deadline while watching a pod
_WATCH_WINDOW = 5

_INVALID_NAME_RE = re.compile(r"[^a-z0-9-]+")


def k8s_name(value: str) -> str:
    """Turns a value into a valid Kubernetes resource name."""
    name = _INVALID_NAME_RE.sub("-", value.lower()).strip("-")

    return name[:63].rstrip("-")


@define(frozen=True, kw_only=True)
class PodResources:
    """Resources requested by the test pods.

    Arguments:
        memory: memory request and limit, i.e. `2Gi`.
        cpu: CPU request, i.e. `1`.
        cpu_limit: CPU limit, none when unset.
    """

    memory: str = "2Gi"
    cpu: str = "1"
    cpu_limit: Optional[str] = None


@define(frozen=True, kw_only=True)
class PodVolume:
    """A path of the node mounted in the test pods.

    Arguments:
        name: name of the volume.
        host_path: path on the node.
        mount_path: path in the test container.
        read_only: mount without write access.
    """

    name: str
    host_path: str
    mount_path: str
    read_only: bool = False


def pull_secret_name(run_id: str) -> str:
    """Name of the image pull secret of a run."""
    return k8s_name(f"{run_id}-docker-config")


def pod_manifest(
    name: str,
    namespace: str,
    ref: Reference,
    driver: str,
    run_id: str,
    resources: PodResources,
    envs: Dict[str, str],
    volumes: List[PodVolume],
) -> Dict[str, Any]:
    """Builds the pod running a test image.

    The environment set here is merged on top of the image's one.
    """
    env = [
        {"name": "IMAGETEST", "value": "true"},
        {"name": "IMAGETEST_DRIVER", "value": driver},
        {"name": "POD_NAME", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}},
        {"name": "POD_NAMESPACE", "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}}},
    ]
    env += [{"name": key, "value": value} for key, value in sorted(envs.items())]

    limits = {"memory": resources.memory}
    if resources.cpu_limit:
        limits["cpu"] = resources.cpu_limit

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {"app.kubernetes.io/managed-by": "imagetest", "imagetest.run": k8s_name(run_id)},
        },
        "spec": {
            "restartPolicy": "Never",
            "serviceAccountName": SERVICE_ACCOUNT,
            "imagePullSecrets": [{"name": pull_secret_name(run_id)}],
            "containers": [
                {
                    "name": CONTAINER_NAME,
                    "image": str(ref),
                    "imagePullPolicy": "IfNotPresent",
                    "securityContext": {"privileged": True, "runAsUser": 0},
                    "env": env,
                    "resources": {
                        "requests": {"memory": resources.memory, "cpu": resources.cpu},
                        "limits": limits,
                    },
                    "volumeMounts": [
                        {"name": volume.name, "mountPath": volume.mount_path, "readOnly": volume.read_only}
                        for volume in volumes
                    ],
                }
            ],
            "volumes": [
                {"name": volume.name, "hostPath": {"path": volume.host_path}} for volume in volumes
            ],
        },
    }


def pull_secret_manifest(name: str, namespace: str, config: Dict[str, Any]) -> Dict[str, Any]:
    """Builds the secret granting access to the registries of the test images."""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "kubernetes.io/dockerconfigjson",
        "metadata": {"name": name, "namespace": namespace},
        "data": {".dockerconfigjson": base64.b64encode(json.dumps(config).encode("utf-8")).decode("ascii")},
    }


def exit_error(pod: Any, ref: Reference) -> TestError:
    """Builds the error of a failed pod from its terminated container."""
    for status in (pod.status.container_statuses or []):
        terminated = status.state.terminated if status.state else None
        if terminated is None:
            continue

        detail = f"container exited with code {terminated.exit_code}"
        if terminated.reason and terminated.reason not in ("Error", "Completed"):
            detail += f" ({terminated.reason})"

        return TestError(detail, exit_code=terminated.exit_code, ref=str(ref))

    return TestError(f"pod failed: {pod.status.reason or 'unknown reason'}", ref=str(ref))


def _ignore_conflict(func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except ApiException as exc:
        if exc.status != 409:
            raise
        return None


def _ignore_missing(func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except ApiException as exc:
        if exc.status != 404:
            raise
        return None


class _LogStreamer:
    """Forwards the logs of a pod's container until it terminates."""

    def __init__(self, core: k8s.CoreV1Api, name: str, namespace: str, prefix: str):
        self._core = core
        self._name = name
        self._namespace = namespace
        self._prefix = prefix
        self._thread: Optional[threading.Thread] = None
        self._resp: Any = None
        self._closed = False

    @property
    def started(self) -> bool:
        return self._thread is not None

    def start(self):
        self._thread = threading.Thread(target=self._stream, daemon=True)
        self._thread.start()

    def _emit(self, line: bytes):
        log(f"{self._prefix} {line.decode('utf-8', errors='replace')}")

    def _stream(self):
        pending = b""

        try:
            self._resp = self._core.read_namespaced_pod_log(
                self._name,
                self._namespace,
                container=CONTAINER_NAME,
                follow=True,
                _preload_content=False,
            )

            for chunk in self._resp.stream():
                *lines, pending = (pending + chunk).split(b"\n")
                for line in lines:
                    self._emit(line)

        except ApiException as exc:
            log(f"{self._prefix} failed to stream logs: {exc.reason}")

        except (HTTPError, OSError, ValueError) as exc:
            # closing the response from `join` interrupts the read
            if not self._closed:
                log(f"{self._prefix} log stream interrupted: {exc}")

        finally:
            if pending:
                self._emit(pending)

    def join(self, timeout: float) -> bool:
        """Waits for the stream to end, closing it if it is still open after
        `timeout` seconds.

        Returns:
            False if the stream is still running afterwards.
        """
        if self._thread is None:
            return True

        self._thread.join(timeout)

        if self._thread.is_alive() and self._resp is not None:
            self._closed = True
            self._resp.close()
            self._thread.join(timeout)

        return not self._thread.is_alive()


@define(kw_only=True)
class PodRunner:
    """Runs test images as pods, one at a time.

    Arguments:
        api: client of the cluster.
        run_id: the run the pods belong to.
        driver: name of the driver, exposed to the tests.
        keychain: credentials used to pull the test images.
        registries: registries the pull secret grants access to.
        namespace: where the pods are created.
        resources: resources of the test pods.
        envs: environment variables set in the test containers.
        volumes: node paths mounted in the test containers.
    """

    api: k8s.ApiClient
    run_id: str
    driver: str
    keychain: Keychain
    registries: List[str]
    namespace: str = DEFAULT_NAMESPACE
    resources: PodResources = field(factory=PodResources)
    envs: Dict[str, str] = field(factory=dict)
    volumes: List[PodVolume] = field(factory=list)
    runs: int = field(default=0, init=False)

    @property
    def core(self) -> k8s.CoreV1Api:
        return k8s.CoreV1Api(self.api)

    @property
    def cluster_role_binding(self) -> str:
        """Name of the binding granting cluster-admin to the test pods."""
        return k8s_name(f"imagetest-{self.namespace}-{self.run_id}")

    def preflight(self) -> bool:
        """Creates the namespace, the service account and its binding.

        Returns:
            True if the namespace has been created, False if it existed.

        Raises:
            DriverSetupError: if any of the resources cannot be created.
        """
        rbac = k8s.RbacAuthorizationV1Api(self.api)

        try:
            created = _ignore_conflict(
                self.core.create_namespace, {"metadata": {"name": self.namespace}}
            )
            _ignore_conflict(
                self.core.create_namespaced_service_account,
                self.namespace,
                {"metadata": {"name": SERVICE_ACCOUNT, "namespace": self.namespace}},
            )
            _ignore_conflict(
                rbac.create_cluster_role_binding,
                {
                    "metadata": {"name": self.cluster_role_binding},
                    "roleRef": {
                        "apiGroup": "rbac.authorization.k8s.io",
                        "kind": "ClusterRole",
                        "name": "cluster-admin",
                    },
                    "subjects": [
                        {"kind": "ServiceAccount", "name": SERVICE_ACCOUNT, "namespace": self.namespace}
                    ],
                },
            )

        except ApiException as exc:
            raise DriverSetupError(f"failed to prepare namespace {self.namespace}: {exc.reason}") from exc

        except HTTPError as exc:
            raise DriverSetupError(f"failed to prepare namespace {self.namespace}: {exc}") from exc

        return created is not None

    def ensure_pull_secret(self, ref: Reference):
        """Creates or updates the pull secret for the registry of a test image."""
        registries = list(self.registries)
        if ref.registry not in registries:
            registries.append(ref.registry)

        name = pull_secret_name(self.run_id)

        try:
            body = pull_secret_manifest(name, self.namespace, docker_config(self.keychain, registries))
        except CredentialsError as exc:
            raise TestError(f"failed to get registry credentials: {exc}", ref=str(ref)) from exc

        try:
            if _ignore_conflict(self.core.create_namespaced_secret, self.namespace, body) is None:
                self.core.replace_namespaced_secret(name, self.namespace, body)

        except ApiException as exc:
            raise TestError(f"failed to create pull secret: {exc.reason}", ref=str(ref)) from exc

        except HTTPError as exc:
            raise TestError(f"failed to create pull secret: {exc}", ref=str(ref)) from exc

    def cleanup(self, delete_namespace: bool):
        """Deletes what `preflight` created. Resources already gone are skipped."""
        rbac = k8s.RbacAuthorizationV1Api(self.api)

        _ignore_missing(rbac.delete_cluster_role_binding, self.cluster_role_binding)

        if delete_namespace:
            _ignore_missing(self.core.delete_namespace, self.namespace)
        else:
            _ignore_missing(
                self.core.delete_collection_namespaced_pod,
                self.namespace,
                label_selector=f"imagetest.run={k8s_name(self.run_id)}",
            )
            _ignore_missing(self.core.delete_namespaced_secret, pull_secret_name(self.run_id), self.namespace)

    def _kill(self, name: str):
        try:
            self.core.delete_namespaced_pod(name, self.namespace, grace_period_seconds=0)
        except ApiException as exc:
            log(f"failed to delete pod {name}: {exc.reason}")
        except HTTPError as exc:
            log(f"failed to delete pod {name}: {exc}")

    def run(self, deadline: Deadline, ref: Reference):
        """Runs a test image and waits for its pod to terminate.

        Raises:
            TestError: if the pod fails.
            DeadlineExceeded: if the pod does not terminate in time. The pod is
                deleted.
        """
        self.runs += 1
        name = k8s_name(f"{self.run_id}-{self.runs}")

        self.ensure_pull_secret(ref)

        manifest = pod_manifest(
            name, self.namespace, ref, self.driver, self.run_id, self.resources, self.envs, self.volumes
        )

        try:
            self.core.create_namespaced_pod(self.namespace, manifest)
        except ApiException as exc:
            raise TestError(f"failed to create pod {name}: {exc.reason}", ref=str(ref)) from exc
        except HTTPError as exc:
            raise TestError(f"failed to create pod {name}: {exc}", ref=str(ref)) from exc

        logs = _LogStreamer(self.core, name, self.namespace, f"[{name}]")

        try:
            pod = self._wait(deadline, name, ref, logs)
        finally:
            # the stream ends when the container terminates, flushing the last lines
            if not logs.join(10):
                warning(f"log stream of pod {name} did not stop")

        if pod.status.phase == "Failed":
            raise exit_error(pod, ref)

    def _wait(self, deadline: Deadline, name: str, ref: Reference, logs: _LogStreamer) -> Any:
        watcher = watch.Watch()

        while True:
            if deadline.expired():
                self._kill(name)

                if deadline.cancelled():
                    raise DeadlineExceeded(f"test pod {name} cancelled", ref=str(ref))

                raise DeadlineExceeded(f"test pod {name} did not complete before its timeout", ref=str(ref))

            window = max(1, int(deadline.bound(_WATCH_WINDOW)))

            try:
                events = watcher.stream(
                    self.core.list_namespaced_pod,
                    self.namespace,
                    field_selector=f"metadata.name={name}",
                    timeout_seconds=window,
                )

                for event in events:
                    pod = event["object"]
                    phase = pod.status.phase if pod.status else None

                    if phase in ("Running", "Succeeded", "Failed") and not logs.started:
                        logs.start()

                    if phase in ("Succeeded", "Failed"):
                        watcher.stop()
                        return pod

                    for status in (pod.status.container_statuses or []):
                        waiting = status.state.waiting if status.state else None
                        if waiting is not None and waiting.reason in _FATAL_WAITING_REASONS:
                            watcher.stop()
                            self._kill(name)
                            raise TestError(
                                f"pod {name} cannot start: {waiting.reason} {waiting.message or ''}".strip(),
                                ref=str(ref),
                            )

                    if deadline.expired():
                        watcher.stop()
                        break

            except ApiException as exc:
                if exc.status != 410:
                    raise TestError(f"failed to watch pod {name}: {exc.reason}", ref=str(ref)) from exc

            except HTTPError as exc:
                self._kill(name)
                raise TestError(f"failed to watch pod {name}: {exc}", ref=str(ref)) from exc
