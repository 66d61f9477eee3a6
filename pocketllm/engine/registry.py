"""Runtime registry.

Runtimes are looked up by a short, case-insensitive name such as
"transformers". Third-party runtimes can be added with `register_runtime()`.
"""

from typing import Type

from .adapters.base import BaseRuntime
from .adapters.hf import TransformersRuntime

_RUNTIMES: dict[str, Type[BaseRuntime]] = {
    TransformersRuntime.name: TransformersRuntime,
}


def get_runtime(name: str) -> BaseRuntime:
    """
    Instantiate the runtime registered under `name`.

    Raises:
        ValueError: If no runtime is registered under that name.
    """
    key = str(name).strip().lower()
    runtime_cls = _RUNTIMES.get(key)
    if runtime_cls is None:
        raise ValueError(f"Unknown runtime: {name!r}. Available: {', '.join(sorted(_RUNTIMES))}")
    return runtime_cls()


def register_runtime(name: str, runtime_cls: Type[BaseRuntime], *, replace: bool = False) -> None:
    """Make `runtime_cls` available to `EngineConfig(runtime=name)`."""
    if not (isinstance(runtime_cls, type) and issubclass(runtime_cls, BaseRuntime)):
        raise TypeError(f"{runtime_cls!r} is not a BaseRuntime subclass")
    key = str(name).strip().lower()
    if key in _RUNTIMES and not replace:
        raise ValueError(f"Runtime {name!r} is already registered.")
    _RUNTIMES[key] = runtime_cls


def list_runtimes() -> list[str]:
    return sorted(_RUNTIMES)
