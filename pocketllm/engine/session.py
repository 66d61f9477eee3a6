"""Model handle + decode context lifecycle."""

from __future__ import annotations

import logging
import os
import threading
from typing import Any

from .adapters.base import BaseRuntime
from .errors import LoadError
from .types import ContextParams, DecodeContext, ModelHandle, ModelParams

logger = logging.getLogger(__name__)


class ModelSession:
    """Owns one loaded ModelHandle and its DecodeContext.

    Handle and context are published and torn down together; callers never
    observe one without the other.

    Thread-safety:
        `load()`/`unload()` must be serialized by the caller (the engine holds
        its single-flight lock). Progress and `is_loaded` reads are safe from
        any thread.
    """

    def __init__(
        self,
        runtime: BaseRuntime,
        *,
        context_size: int = 2048,
        device: str = "cpu",
        dtype: str = "float32",
    ) -> None:
        if context_size <= 0:
            raise ValueError(f"context_size must be > 0, got {context_size}")
        self._runtime = runtime
        self._context_size = int(context_size)
        self._device = device
        self._dtype = dtype

        self._guard = threading.Lock()
        self._handle: ModelHandle | None = None
        self._context: DecodeContext | None = None
        self._progress = 0.0

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def runtime(self) -> BaseRuntime:
        return self._runtime

    @property
    def is_loaded(self) -> bool:
        with self._guard:
            return self._handle is not None and self._context is not None

    @property
    def load_progress(self) -> float:
        with self._guard:
            return self._progress

    @property
    def model_path(self) -> str | None:
        with self._guard:
            return None if self._handle is None else self._handle.path

    def acquire(self) -> tuple[ModelHandle, DecodeContext]:
        """Return the (handle, context) pair or raise if nothing is loaded."""
        with self._guard:
            if self._handle is None or self._context is None:
                raise RuntimeError("Model not loaded. Call load() first.")
            return self._handle, self._context

    def model_info(self) -> dict[str, Any]:
        with self._guard:
            handle, context = self._handle, self._context
        if handle is None or context is None:
            return {"loaded": False}
        info = dict(self._runtime.model_info(handle))
        info.update({"loaded": True, "n_ctx": context.n_ctx, "n_threads": context.n_threads})
        return info

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, path: str, n_threads: int) -> None:
        """Load weights from `path` and create the decode context.

        Raises:
            LoadError: missing/unreadable file or runtime failure. Nothing
                stays allocated when this is raised.
        """
        if n_threads <= 0:
            raise ValueError(f"n_threads must be > 0, got {n_threads}")

        self.unload()
        self._set_progress(0.0, reset=True)
        try:
            self._load(path, n_threads)
        except LoadError:
            self._set_progress(0.0, reset=True)
            raise

    def _load(self, path: str, n_threads: int) -> None:
        if not os.path.exists(path):
            raise LoadError(f"Model file not found: {path}")
        if not os.access(path, os.R_OK):
            raise LoadError(f"Cannot read model file (check permissions): {path}")

        logger.info("Loading model from %s (runtime=%s, threads=%d)", path, self._runtime.name, n_threads)

        try:
            handle = self._runtime.load_model(
                path,
                ModelParams(n_threads=n_threads, device=self._device, dtype=self._dtype),
                progress_callback=self._set_progress,
            )
        except LoadError:
            raise
        except Exception as exc:
            raise LoadError(f"Runtime failed to load model: {exc}") from exc
        if handle is None:
            raise LoadError("Runtime returned no model handle.")

        try:
            context = self._runtime.new_context(
                handle,
                ContextParams(n_ctx=self._context_size, n_threads=n_threads),
            )
        except Exception as exc:
            self._runtime.free_model(handle)
            raise LoadError(f"Failed to create decode context: {exc}") from exc
        if context is None:
            self._runtime.free_model(handle)
            raise LoadError("Runtime returned no decode context.")

        with self._guard:
            self._handle = handle
            self._context = context
            self._progress = 1.0

        logger.info("Model loaded. Context size: %d", context.n_ctx)

    def unload(self) -> None:
        """Release context then handle. Safe to call when nothing is loaded."""
        with self._guard:
            handle, context = self._handle, self._context
            self._handle = None
            self._context = None
            self._progress = 0.0

        if context is not None:
            self._runtime.free_context(context)
        if handle is not None:
            self._runtime.free_model(handle)
            logger.info("Model unloaded: %s", handle.path)

    def _set_progress(self, value: float, *, reset: bool = False) -> None:
        value = min(max(float(value), 0.0), 1.0)
        with self._guard:
            # Best-effort monotonic progress.
            self._progress = value if reset else max(self._progress, value)
