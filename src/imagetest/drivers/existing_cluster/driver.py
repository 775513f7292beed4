"""Driver running each test as a pod of a cluster provisioned elsewhere."""
import os
from typing import Dict, List, Optional

from attrs import define, field
from kubernetes import client as k8s
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from imagetest.core.deadline import Deadline
from imagetest.core.errors import DriverSetupError
from imagetest.core.reference import Reference
from imagetest.drivers.base import Driver, NotReady, wait_until
from imagetest.drivers.pod import DEFAULT_NAMESPACE, PodResources, PodRunner, PodVolume
from imagetest.utils import log


@define(frozen=True, kw_only=True)
class ExistingClusterOptions:
    """Configuration of the existing cluster driver.

    Arguments:
        kubeconfig: path of the kubeconfig, `KUBECONFIG` or the in-cluster
            configuration are used when unset.
        context: kubeconfig context to use.
        namespace: namespace of the test pods.
        resources: resources of the test pods.
        envs: environment variables set in the test containers.
        volumes: node paths mounted in the test pods.
    """

    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    namespace: str = DEFAULT_NAMESPACE
    resources: PodResources = field(factory=PodResources)
    envs: Dict[str, str] = field(factory=dict)
    volumes: List[PodVolume] = field(factory=list)


def load_api_client(kubeconfig: Optional[str], context: Optional[str]) -> k8s.ApiClient:
    """Creates a client from a kubeconfig, falling back to the in-cluster
    configuration when running in a pod.

    Raises:
        DriverSetupError: if no configuration can be found.
    """
    try:
        return k8s_config.new_client_from_config(config_file=kubeconfig, context=context)

    except (ConfigException, OSError) as exc:
        if kubeconfig is None and os.environ.get("KUBERNETES_SERVICE_HOST"):
            configuration = k8s.Configuration()
            k8s_config.load_incluster_config(client_configuration=configuration)
            return k8s.ApiClient(configuration)

        raise DriverSetupError(f"failed to load kubeconfig: {exc}") from exc


@define(kw_only=True)
class ExistingCluster(Driver):
    """Runs the tests in a cluster it does not own. Teardown only removes
    what the driver created.

    Arguments:
        options: the driver's configuration.
    """

    options_type = ExistingClusterOptions

    options: ExistingClusterOptions
    api: Optional[k8s.ApiClient] = field(default=None, init=False)
    pods: Optional[PodRunner] = field(default=None, init=False)

    @classmethod
    def spec_name(cls) -> str:
        return "existing_cluster"

    def _healthy(self):
        try:
            k8s.VersionApi(self.api).get_code()
        except (ApiException, HTTPError) as exc:
            raise NotReady(f"cluster API not available: {exc}") from exc

    def setup(self, deadline: Deadline):
        self.api = load_api_client(self.options.kubeconfig, self.options.context)
        self.teardowns.push("close kubernetes client", self.api.close)

        wait_until(deadline, "cluster API", self._healthy)

        self.pods = PodRunner(
            api=self.api,
            run_id=self.ctx.run_id,
            driver=self.spec_name(),
            keychain=self.ctx.keychain,
            registries=self.ctx.registries,
            namespace=self.options.namespace,
            resources=self.options.resources,
            envs=self.options.envs,
            volumes=self.options.volumes,
        )

        created = self.pods.preflight()
        self.teardowns.push(
            f"remove imagetest resources from namespace {self.options.namespace}",
            lambda: self.pods.cleanup(delete_namespace=created),
        )

        log(f"using existing cluster id={self.ctx.run_id} namespace={self.options.namespace}")

    def run(self, deadline: Deadline, ref: Reference):
        if self.pods is None:
            raise DriverSetupError("existing cluster driver has not been set up")

        self.pods.run(deadline, ref)
