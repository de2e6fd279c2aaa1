"""Command-line client for the kerbside forecast service."""

from importlib import import_module
from types import ModuleType


def __getattr__(name: str) -> ModuleType:
    if name == "app":
        return import_module("cli.app")
    raise AttributeError(name)

# ``cli.app`` must stay the module, not the Typer instance; tests patch
# ``cli.app.ApiClient``.

__all__ = []
