"""
pocketllm - On-device generative text inference.

Loads a causal language model, runs the token-by-token decode loop and
streams the produced text, with stop sequences and cooperative cancellation.

Quick Start:
    from pocketllm import InferenceEngine

    engine = InferenceEngine()
    if engine.load_model("/models/tiny-llama", n_threads=4):
        text = engine.generate("Hello", 50, 0.7, 0.9, ["###"])

    # Streaming (blocking; run it on a worker thread)
    engine.generate_streaming("Hello", lambda piece: print(piece, end=""))

Submodules:
    - pocketllm.engine: Engine facade, generation loop, sampling, stop matching
    - pocketllm.engine.adapters: Model runtimes
    - pocketllm.runtime: Device / thread-count helpers (requires torch)

Environment Variables:
    POCKETLLM_LOG_LEVEL: Log level used by the CLI (default: WARNING)
"""

from pocketllm._version import __version__

from pocketllm.engine import (
    CancellationToken,
    ConsumerCallbackError,
    DecodeError,
    EngineConfig,
    EngineError,
    EngineState,
    EngineStateError,
    GenerationRequest,
    GenerationResult,
    InferenceEngine,
    LoadError,
    SamplerConfig,
    StopSequenceMatcher,
    TokenEvent,
    TokenizeError,
)
from pocketllm.engine.discovery import find_model_files

__all__ = [
    # Version
    "__version__",
    # Engine
    "InferenceEngine",
    "EngineConfig",
    "EngineState",
    "SamplerConfig",
    "GenerationRequest",
    "GenerationResult",
    "TokenEvent",
    "CancellationToken",
    "StopSequenceMatcher",
    # Errors
    "EngineError",
    "EngineStateError",
    "LoadError",
    "TokenizeError",
    "DecodeError",
    "ConsumerCallbackError",
    # Utilities
    "find_model_files",
]
