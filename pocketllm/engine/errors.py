"""Engine error taxonomy.

Cooperative cancellation is not an error: it ends a generation normally with
finish_reason="cancelled".
"""

from __future__ import annotations


class EngineError(RuntimeError):
    """Base class for errors raised by the inference engine."""


class EngineStateError(EngineError):
    """An operation was invoked in a state that does not allow it."""

    def __init__(self, message: str, *, state: str | None = None) -> None:
        super().__init__(message)
        self.state = state


class LoadError(EngineError):
    """The model file is missing/unreadable or the runtime failed to load it."""


class TokenizeError(EngineError):
    """The prompt could not be encoded into tokens."""


class DecodeError(EngineError):
    """A forward pass (prefill or incremental decode) failed."""

    def __init__(self, message: str, *, position: int | None = None) -> None:
        super().__init__(message)
        self.position = position


class ConsumerCallbackError(EngineError):
    """The streaming consumer raised while receiving a fragment."""
