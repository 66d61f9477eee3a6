"""Engine request, event and state types.

These types are used internally by the engine and runtimes.
They are independent of any UI or transport layer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Literal


FinishReason = Literal["eos", "stop", "length", "cancelled", "error"]


class EngineState(str, enum.Enum):
    """Coarse engine lifecycle state."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"
    ERROR = "error"


@dataclass(frozen=True)
class GenerationRequest:
    """A single generation call. Immutable for the duration of the call."""

    prompt: str
    max_tokens: int = 256
    temperature: float = 0.7
    top_p: float = 0.85
    stop: tuple[str, ...] = ()
    seed: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.prompt, str):
            raise ValueError("'prompt' must be a string.")
        if isinstance(self.max_tokens, bool) or not isinstance(self.max_tokens, int):
            raise ValueError("'max_tokens' must be an integer.")
        if self.max_tokens < 0:
            raise ValueError("'max_tokens' must be >= 0.")
        if self.temperature is None or self.temperature < 0:
            raise ValueError(f"'temperature' must be >= 0, got {self.temperature}.")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"'top_p' must be in (0, 1], got {self.top_p}.")
        # Accept any sequence of strings; keep caller order.
        object.__setattr__(self, "stop", tuple(self.stop))
        for s in self.stop:
            if not isinstance(s, str):
                raise ValueError("'stop' must contain only strings.")


@dataclass(frozen=True)
class TokenEvent:
    """A produced text fragment.

    The last event of a generation has `final=True` and carries the finish
    reason; its text may be empty.
    """

    text: str
    final: bool = False
    finish_reason: FinishReason | None = None


@dataclass(frozen=True)
class Timing:
    prefill_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of one generation call."""

    text: str
    finish_reason: FinishReason
    prompt_tokens: int = 0
    completion_tokens: int = 0
    timing: Timing = field(default_factory=Timing)
    error: Exception | None = None


@dataclass
class ModelHandle:
    """Loaded weights + vocabulary, as produced by a runtime."""

    path: str
    model: Any
    tokenizer: Any
    eos_token_ids: frozenset[int] = frozenset()
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class DecodeContext:
    """Key/value cache and position counter bound to one ModelHandle.

    `position` is the next free cache position. Runtimes keep any
    implementation-specific state in `cache`, `logits` and `extra`.
    """

    n_ctx: int
    n_threads: int
    cache: Any = None
    position: int = 0
    logits: Any = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelParams:
    """Parameters passed to BaseRuntime.load_model()."""

    n_threads: int = 4
    device: str = "cpu"
    dtype: str = "float32"


@dataclass(frozen=True)
class ContextParams:
    """Parameters passed to BaseRuntime.new_context()."""

    n_ctx: int = 2048
    n_threads: int = 4
