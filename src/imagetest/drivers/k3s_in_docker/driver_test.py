from types import SimpleNamespace
from unittest import mock

import docker
import yaml
from testfixtures import ShouldRaise, compare

from imagetest.core.deadline import Deadline
from imagetest.core.errors import DriverSetupError
from imagetest.core.reference import parse_repository
from imagetest.drivers.base import DriverContext
from imagetest.drivers.k3s_in_docker.driver import (
    K3sInDocker,
    K3sInDockerOptions,
    RegistryAuthOptions,
    RegistryMirrorOptions,
    RegistryOptions,
    RegistryTlsOptions,
    _node_ready,
    k3s_config,
    local_mirror,
    registries_config,
    rewrite_kubeconfig,
    tls_paths,
)
from imagetest.registry.auth import Credentials, StaticKeychain

KEYCHAIN = StaticKeychain(
    credentials={
        "ghcr.io": Credentials(username="octo", password="secret"),
        "cgr.dev": Credentials(identity_token="refresh"),
    }
)


def _node(*conditions):
    return SimpleNamespace(
        status=SimpleNamespace(conditions=[SimpleNamespace(type=type_, status=status) for type_, status in conditions])
    )


def test_k3s_config__defaults():
    compare(
        k3s_config(K3sInDockerOptions(), workstation=False),
        {
            "tls-san": ["127.0.0.1", "localhost", "host.docker.internal"],
            "write-kubeconfig-mode": "0644",
            "snapshotter": "overlayfs",
            "disable": ["traefik", "metrics-server"],
            "disable-network-policy": True,
        },
    )


def test_k3s_config__workstation_uses_native_snapshotter():
    options = K3sInDockerOptions(traefik=True, metrics_server=True, network_policy=True, cni=False)

    compare(
        k3s_config(options, workstation=True),
        {
            "tls-san": ["127.0.0.1", "localhost", "host.docker.internal"],
            "write-kubeconfig-mode": "0644",
            "snapshotter": "native",
            "flannel-backend": "none",
        },
    )


def test_local_mirror__keeps_the_port():
    compare(local_mirror("localhost:5005"), "http://host.docker.internal:5005")
    compare(local_mirror("registry.local"), "http://host.docker.internal:80")


def test_tls_paths__only_configured_files():
    paths = tls_paths("registry.local:5000", RegistryTlsOptions(ca_file="/tmp/ca.pem"))

    compare(paths, {"ca_file": "/etc/rancher/k3s/tls/registry.local_5000/ca.pem"})


def test_registries_config__credentials_from_keychain():
    config = registries_config(K3sInDockerOptions(), KEYCHAIN, ["ghcr.io", "cgr.dev", "docker.io"])

    compare(
        config,
        {
            "mirrors": {},
            "configs": {
                "ghcr.io": {"auth": {"username": "octo", "password": "secret"}},
                "cgr.dev": {"auth": {"identity_token": "refresh"}},
            },
        },
    )


def test_registries_config__options_override_keychain():
    options = K3sInDockerOptions(
        registries={
            "ghcr.io": RegistryOptions(auth=RegistryAuthOptions(auth="b2N0bzp0b2tlbg==")),
            "docker.io": RegistryOptions(mirrors=RegistryMirrorOptions(endpoints=["https://mirror.gcr.io"])),
            "registry.local": RegistryOptions(tls=RegistryTlsOptions(ca_file="/tmp/ca.pem")),
        }
    )

    config = registries_config(options, KEYCHAIN, ["ghcr.io"])

    compare(config["mirrors"], {"docker.io": {"endpoint": ["https://mirror.gcr.io"]}})
    compare(
        config["configs"],
        {
            "ghcr.io": {"auth": {"auth": "b2N0bzp0b2tlbg=="}},
            "registry.local": {"tls": {"ca_file": "/etc/rancher/k3s/tls/registry.local/ca.pem"}},
        },
    )


def test_registries_config__local_registry_gets_a_mirror():
    config = registries_config(K3sInDockerOptions(), StaticKeychain(), ["localhost:5005"], "localhost:5005")

    compare(config, {"mirrors": {"localhost:5005": {"endpoint": ["http://host.docker.internal:5005"]}}, "configs": {}})


def test_rewrite_kubeconfig__points_to_published_port():
    raw = yaml.safe_dump(
        {
            "apiVersion": "v1",
            "clusters": [{"name": "default", "cluster": {"server": "https://127.0.0.1:6443"}}],
        }
    )

    kubeconfig = rewrite_kubeconfig(raw, 32768)

    compare(kubeconfig["clusters"][0]["cluster"]["server"], "https://127.0.0.1:32768")


def test_node_ready__reads_ready_condition():
    compare(_node_ready(_node(("MemoryPressure", "False"), ("Ready", "True"))), True)
    compare(_node_ready(_node(("Ready", "False"))), False)
    compare(_node_ready(_node()), False)


def test_local_registry__only_for_local_target():
    def driver(repo):
        ctx = DriverContext(run_id="tests-k3s-in-docker-1a2b", keychain=StaticKeychain(), target_repo=parse_repository(repo))
        return K3sInDocker.from_options(ctx, None)

    compare(driver("localhost:5005/imagetest").local_registry, "localhost:5005")
    compare(driver("ghcr.io/org/imagetest").local_registry, None)


def test_from_options__structures_registries():
    ctx = DriverContext(run_id="run", keychain=StaticKeychain(), target_repo=parse_repository("ghcr.io/org/imagetest"))

    driver = K3sInDocker.from_options(
        ctx, {"registries": {"docker.io": {"mirrors": {"endpoints": ["https://mirror.gcr.io"]}}}, "traefik": True}
    )

    compare(
        driver.options.registries,
        {"docker.io": RegistryOptions(mirrors=RegistryMirrorOptions(endpoints=["https://mirror.gcr.io"]))},
    )
    compare(driver.options.traefik, True)


def test_setup__docker_errors_raise_DriverSetupError():
    ctx = DriverContext(run_id="tests-k3s-in-docker-1a2b", keychain=StaticKeychain(), target_repo=parse_repository("ghcr.io/org/imagetest"))
    driver = K3sInDocker.from_options(ctx, None)

    with mock.patch("imagetest.drivers.k3s_in_docker.driver.docker_client") as client, mock.patch(
        "imagetest.drivers.k3s_in_docker.driver.put_files"
    ):
        container = client.return_value.containers.create.return_value
        container.status = "running"
        container.exec_run.side_effect = docker.errors.APIError("daemon went away")

        with ShouldRaise(DriverSetupError) as exc:
            driver.setup(Deadline(timeout=10))

    compare(exc.raised.detail, "failed to start cluster imagetest-tests-k3s-in-docker-1a2b: daemon went away")
