"""Single-flight inference engine facade.

This module provides the engine entry point:
- model load/unload with a coarse state machine
- serialized generation (blocking, callback-streaming and async streaming)
- cooperative cancellation

It deliberately contains no UI, prompt-assembly or transport code.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Sequence

from .adapters.base import BaseRuntime
from .cancellation import CancellationToken
from .errors import ConsumerCallbackError, EngineStateError, LoadError, TokenizeError
from .generation import GenerationLoop
from .sampling import SamplerConfig
from .session import ModelSession
from .types import EngineState, GenerationRequest, GenerationResult, TokenEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults and limits."""

    runtime: str = "transformers"
    context_size: int = 2048
    device: str = "cpu"
    dtype: str = "float32"
    sampler: SamplerConfig = field(default_factory=SamplerConfig)

    def validate(self) -> None:
        if self.context_size <= 0:
            raise ValueError("'context_size' must be > 0.")
        self.sampler.validate()


class InferenceEngine:
    """On-device text generation engine.

    State machine:
        UNLOADED -> LOADING -> READY -> GENERATING -> READY | ERROR
        unload_model() reaches UNLOADED from any state.

    Thread-safety:
        The runtime is not thread-safe. Load, generation and unload are
        serialized with one lock (single-flight). State reads use a separate
        short-held lock so they never wait for a running load or generation.
    """

    def __init__(
        self,
        runtime: BaseRuntime | None = None,
        *,
        config: EngineConfig | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._config.validate()
        if runtime is None:
            from .registry import get_runtime

            runtime = get_runtime(self._config.runtime)

        self._session = ModelSession(
            runtime,
            context_size=self._config.context_size,
            device=self._config.device,
            dtype=self._config.dtype,
        )
        self._loop = GenerationLoop(self._session)

        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = EngineState.UNLOADED
        self._error_message: str | None = None
        self._active_cancel: CancellationToken | None = None

    # -------------------------------------------------------------------------
    # State reads
    # -------------------------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def state(self) -> EngineState:
        with self._state_lock:
            return self._state

    @property
    def error_message(self) -> str | None:
        with self._state_lock:
            return self._error_message

    @property
    def model_info(self) -> dict[str, Any]:
        return self._session.model_info()

    def is_model_loaded(self) -> bool:
        return self._session.is_loaded

    def is_generating(self) -> bool:
        return self.state is EngineState.GENERATING

    def get_load_progress(self) -> float:
        return self._session.load_progress

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load_model(self, path: str, n_threads: int | None = None) -> bool:
        """Load a model. Returns False (and moves to ERROR) if loading fails.

        Raises:
            ValueError: `n_threads` is not positive; the state is left unchanged.
            EngineStateError: not in UNLOADED or ERROR. A load that is already
                in progress is rejected immediately, never queued.
        """
        threads = self._config.sampler.n_threads if n_threads is None else int(n_threads)
        if threads <= 0:
            raise ValueError(f"n_threads must be > 0, got {n_threads}")

        with self._state_lock:
            if self._state not in (EngineState.UNLOADED, EngineState.ERROR):
                logger.warning("Rejected load_model(%r) in state %s", path, self._state.value)
                raise EngineStateError(
                    f"Cannot load a model in state {self._state.value!r}.",
                    state=self._state.value,
                )
            self._state = EngineState.LOADING
            self._error_message = None

        with self._lock:
            try:
                self._session.load(path, threads)
            except LoadError as exc:
                logger.exception("Failed to load model")
                self._set_state(EngineState.ERROR, error=str(exc))
                return False
            except BaseException as exc:
                self._set_state(EngineState.ERROR, error=str(exc) or type(exc).__name__)
                raise

            self._set_state(EngineState.READY, error=None)
        return True

    def unload_model(self) -> None:
        """Cancel any generation, free the model and end in UNLOADED. Idempotent."""
        self.cancel_generation()
        with self._lock:
            self._session.unload()
            self._set_state(EngineState.UNLOADED, error=None)

    def shutdown(self) -> None:
        self.unload_model()

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def cancel_generation(self) -> None:
        """Request cancellation of the in-flight generation; no-op when idle."""
        with self._state_lock:
            token = self._active_cancel
        if token is not None:
            token.cancel()
            logger.info("Generation cancel requested")

    def generate(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        stop: Sequence[str] | None = None,
        *,
        seed: int | None = None,
    ) -> str:
        """Generate a complete response (blocking). Unset parameters use config defaults."""
        request = self._config.sampler.request(
            prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            top_p=top_p,
            stop=stop,
            seed=seed,
        )
        return self.run(request).text

    def generate_streaming(
        self,
        prompt: str,
        on_token: Callable[[str], None],
        max_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        stop: Sequence[str] | None = None,
        *,
        seed: int | None = None,
    ) -> GenerationResult:
        """Generate with streaming (blocking).

        `on_token` runs inline with the decode loop, once per fragment and in
        order. It must not block. If it raises, generation stops and
        ConsumerCallbackError is raised.
        """
        request = self._config.sampler.request(
            prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            top_p=top_p,
            stop=stop,
            seed=seed,
        )

        def sink(event: TokenEvent) -> None:
            if event.text:
                on_token(event.text)

        return self.run(request, sink=sink)

    def run(
        self,
        request: GenerationRequest,
        *,
        sink: Callable[[TokenEvent], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> GenerationResult:
        """Run one request. Must be called from a worker thread, never an event loop.

        Raises:
            EngineStateError: the engine is not READY (state is left unchanged).
            TokenizeError: the prompt could not be encoded.
            ConsumerCallbackError: `sink` raised.
        """
        token = cancel or CancellationToken()

        with self._state_lock:
            if self._state is not EngineState.READY:
                raise EngineStateError(
                    f"Model not ready. Current state: {self._state.value}",
                    state=self._state.value,
                )
            self._state = EngineState.GENERATING
            self._active_cancel = token

        try:
            with self._lock:
                if not self._session.is_loaded:
                    raise EngineStateError("Model was unloaded before generation started.")
                result = self._loop.run(request, cancel=token, sink=sink)
        except (TokenizeError, ConsumerCallbackError, EngineStateError):
            self._finish_generation(token, failed=False)
            raise
        except KeyboardInterrupt:
            # Ctrl-C ends the request like a cancel; the model stays usable.
            logger.info("Generation interrupted")
            self._finish_generation(token, failed=False)
            raise
        except BaseException:
            logger.exception("Generation failed")
            self._finish_generation(token, failed=True)
            raise

        self._finish_generation(token, failed=False)
        return result

    async def astream(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        stop: Sequence[str] | None = None,
        *,
        seed: int | None = None,
    ) -> AsyncIterator[TokenEvent]:
        """Async iterator over generation events.

        The decode loop runs on a worker thread; events are forwarded in
        order. The last event has `final=True`. Leaving the iteration early
        cancels the generation.
        """
        request = self._config.sampler.request(
            prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            top_p=top_p,
            stop=stop,
            seed=seed,
        )

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[TokenEvent | BaseException | None] = asyncio.Queue()
        cancel = CancellationToken()
        consumer_gone = threading.Event()

        def post(item: TokenEvent | BaseException | None) -> None:
            # Once the consumer has left, nobody reads the queue and the loop may be closed.
            if consumer_gone.is_set() or loop.is_closed():
                return
            loop.call_soon_threadsafe(queue.put_nowait, item)

        def worker() -> None:
            try:
                self.run(request, sink=post, cancel=cancel)
            except BaseException as exc:
                post(exc)
            finally:
                post(None)

        thread = threading.Thread(target=worker, name=f"pocketllm-gen-{uuid.uuid4().hex}", daemon=True)
        thread.start()

        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            # If the consumer stops early (disconnect / generator close), cancel generation promptly.
            consumer_gone.set()
            cancel.cancel()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _finish_generation(self, token: CancellationToken, *, failed: bool) -> None:
        with self._state_lock:
            if self._active_cancel is token:
                self._active_cancel = None
            # unload_model() may already have moved us to UNLOADED.
            if self._state is not EngineState.GENERATING:
                return
            if failed or not self._session.is_loaded:
                self._state = EngineState.ERROR
                self._error_message = "Model became unusable during generation."
            else:
                self._state = EngineState.READY

    def _set_state(self, state: EngineState, *, error: str | None) -> None:
        with self._state_lock:
            self._state = state
            self._error_message = error
