"""Register the k3s-in-docker plugin."""
from typing import Sequence, Type

from imagetest.drivers.base import Driver
from imagetest.drivers.k3s_in_docker.driver import K3sInDocker


def namespace() -> str:
    """Returns the namespace for the k3s-in-docker plugin."""
    return "k3s_in_docker"


def drivers() -> Sequence[Type[Driver]]:
    """Returns all k3s-in-docker drivers."""
    return [K3sInDocker]
