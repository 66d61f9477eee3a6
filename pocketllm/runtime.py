"""Runtime environment checks for pocketllm."""

from __future__ import annotations

import functools
import os

import torch


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=1)
def is_mps_available() -> bool:
    """Check if the Apple Metal backend is available."""
    backend = getattr(torch.backends, "mps", None)
    return bool(backend is not None and backend.is_available())


def resolve_device(device: str = "auto") -> str:
    """Map "auto" to the best available device; other values pass through."""
    if device != "auto":
        return device
    if is_cuda_available():
        return "cuda"
    if is_mps_available():
        return "mps"
    return "cpu"


def default_thread_count(max_threads: int = 4) -> int:
    """CPU threads for generation: leave one core free, cap at `max_threads`."""
    cpus = os.cpu_count() or 1
    return max(1, min(max_threads, cpus - 1))
