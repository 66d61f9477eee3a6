# Model runtimes
#
# Each runtime implements the capability set the engine consumes:
#   - Loading / freeing a model handle and its decode context
#   - Tokenize, batched decode, sampling, detokenize
#   - End-of-sequence detection
#
# The engine uses runtimes to stay model-format agnostic.

from .base import BaseRuntime

__all__ = ["BaseRuntime"]
