"""Helpers used to add drivers to imagetest."""
from importlib import import_module
from typing import TYPE_CHECKING, List, Type, cast

from attrs import define

if TYPE_CHECKING:
    from imagetest.drivers.base import Driver


@define(frozen=True, kw_only=True)
class Plugin:
    """An imagetest plugin that provides drivers."""

    namespace: str
    drivers: List[Type["Driver"]]


def load_plugin(module: str) -> Plugin:
    """Loads a plugin that exposes drivers in a submodule `register`.

    Arguments:
        module: import path of the plugin.
    """
    register = import_module(f"{module}.register")

    drivers = cast(List[Type["Driver"]], list(getattr(register, "drivers", lambda: [])()))

    return Plugin(
        namespace=register.namespace(),
        drivers=drivers,
    )
