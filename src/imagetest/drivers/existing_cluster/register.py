"""Register the existing cluster plugin."""
from typing import Sequence, Type

from imagetest.drivers.base import Driver
from imagetest.drivers.existing_cluster.driver import ExistingCluster


def namespace() -> str:
    """Returns the namespace for the existing cluster plugin."""
    return "existing_cluster"


def drivers() -> Sequence[Type[Driver]]:
    """Returns all existing cluster drivers."""
    return [ExistingCluster]
