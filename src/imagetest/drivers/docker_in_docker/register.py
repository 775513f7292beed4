"""Register the docker-in-docker plugin."""
from typing import Sequence, Type

from imagetest.drivers.base import Driver
from imagetest.drivers.docker_in_docker.driver import DockerInDocker


def namespace() -> str:
    """Returns the namespace for the docker-in-docker plugin."""
    return "docker_in_docker"


def drivers() -> Sequence[Type[Driver]]:
    """Returns all docker-in-docker drivers."""
    return [DockerInDocker]
