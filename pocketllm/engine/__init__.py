# On-device inference engine
#
# This package provides a single-flight text generation engine over a
# pluggable model runtime.
#
# Key components:
#   - adapters/       Model runtimes (capability set consumed by the engine)
#   - registry.py     Maps runtime names to runtime classes
#   - types.py        Request / event / state types
#   - session.py      Model handle + decode context lifecycle
#   - generation.py   Prefill + decode loop, stop matching, streaming
#   - engine.py       State machine and public entry point

from .cancellation import CancellationToken
from .engine import EngineConfig, InferenceEngine
from .errors import (
    ConsumerCallbackError,
    DecodeError,
    EngineError,
    EngineStateError,
    LoadError,
    TokenizeError,
)
from .sampling import SamplerConfig
from .stop import StopSequenceMatcher
from .types import EngineState, GenerationRequest, GenerationResult, TokenEvent

__all__ = [
    "CancellationToken",
    "ConsumerCallbackError",
    "DecodeError",
    "EngineConfig",
    "EngineError",
    "EngineState",
    "EngineStateError",
    "GenerationRequest",
    "GenerationResult",
    "InferenceEngine",
    "LoadError",
    "SamplerConfig",
    "StopSequenceMatcher",
    "TokenEvent",
    "TokenizeError",
]
