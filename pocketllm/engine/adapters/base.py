"""Base runtime interface consumed by the engine."""

from abc import ABC, abstractmethod
from typing import Any, Callable

from ..batch import Batch
from ..sampling import SamplerChain
from ..types import ContextParams, DecodeContext, GenerationRequest, ModelHandle, ModelParams

ProgressCallback = Callable[[float], None]


class BaseRuntime(ABC):
    """
    Abstract base class for model runtimes.

    A runtime wraps the low-level model library. The engine only ever talks to
    this capability set, so it stays independent of the model format.

    Failure conventions:
        - `load_model` / `new_context` return None (or raise) on failure.
        - `tokenize` raises TokenizeError.
        - `decode` raises DecodeError.
    """

    name: str = "base"

    @abstractmethod
    def load_model(
        self,
        path: str,
        params: ModelParams,
        progress_callback: ProgressCallback | None = None,
    ) -> ModelHandle | None:
        """
        Load weights and vocabulary from `path`.

        Args:
            path: Weights file or model directory.
            params: Thread count, device and dtype.
            progress_callback: Called with values in [0, 1] while loading.
        """
        pass

    @abstractmethod
    def new_context(self, handle: ModelHandle, params: ContextParams) -> DecodeContext | None:
        """Create the decode context (KV cache + position counter) for a handle."""
        pass

    @abstractmethod
    def clear_context(self, context: DecodeContext) -> None:
        """Drop all cached keys/values and reset the position counter to 0."""
        pass

    @abstractmethod
    def tokenize(self, handle: ModelHandle, text: str) -> list[int]:
        pass

    @abstractmethod
    def decode(self, context: DecodeContext, batch: Batch) -> None:
        """
        Run one forward pass over `batch`.

        On success the context's position advances past the batch and the
        logits of the flagged entries are available to `sample_next`.
        """
        pass

    def new_sampler(self, request: GenerationRequest) -> Any:
        """Build the sampler chain for one request."""
        return SamplerChain.from_request(request)

    @abstractmethod
    def sample_next(self, context: DecodeContext, sampler: Any) -> int:
        pass

    @abstractmethod
    def token_to_text(self, handle: ModelHandle, context: DecodeContext, token: int) -> str:
        """
        Convert a generated token to the text it adds to the output.

        May return "" when the token only completes part of a character.
        """
        pass

    def flush_text(self, handle: ModelHandle, context: DecodeContext) -> str:
        """Return text still held back by `token_to_text` once generation ends."""
        return ""

    @abstractmethod
    def is_end_of_sequence(self, handle: ModelHandle, token: int) -> bool:
        pass

    def model_info(self, handle: ModelHandle) -> dict[str, Any]:
        return {"model_path": handle.path, "runtime": self.name}

    def free_context(self, context: DecodeContext) -> None:
        """
        Release the decode context.

        Default implementation drops references; override if cleanup is needed.
        """
        context.cache = None
        context.logits = None
        context.extra.clear()

    def free_model(self, handle: ModelHandle) -> None:
        """
        Release the model handle.

        Default implementation drops references; override if cleanup is needed.
        """
        handle.model = None
        handle.tokenizer = None
