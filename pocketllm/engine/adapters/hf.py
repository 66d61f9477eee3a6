"""Runtime backed by torch + Hugging Face transformers."""

from __future__ import annotations

import gc
import logging
import os
from typing import TYPE_CHECKING, Any

from ..batch import Batch
from ..errors import DecodeError, TokenizeError
from ..types import ContextParams, DecodeContext, ModelHandle, ModelParams
from .base import BaseRuntime, ProgressCallback

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)


_DTYPES = {"float16": "float16", "fp16": "float16", "bfloat16": "bfloat16", "bf16": "bfloat16", "float32": "float32", "fp32": "float32"}
_MAX_UTF8_LEN = 4


def _dtype_from_string(name: str) -> "torch.dtype":
    import torch

    key = _DTYPES.get(str(name).lower())
    if key is None:
        raise ValueError(f"Unsupported dtype: {name!r}. Expected float16|bfloat16|float32.")
    return getattr(torch, key)


def _split_model_path(path: str) -> tuple[str, dict[str, Any]]:
    """Map a GGUF file to (directory, {"gguf_file": name}); directories pass through."""
    if os.path.isfile(path) and path.lower().endswith(".gguf"):
        return os.path.dirname(os.path.abspath(path)), {"gguf_file": os.path.basename(path)}
    return path, {}


class TransformersRuntime(BaseRuntime):
    """
    Runtime for causal LMs loadable with `AutoModelForCausalLM`.

    Accepts a Hugging Face model directory or a single `.gguf` file (the
    latter requires the `gguf` package; transformers dequantizes on load).

    Thread Safety:
        This runtime is NOT thread-safe. The engine serializes all calls.
    """

    name = "transformers"

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load_model(
        self,
        path: str,
        params: ModelParams,
        progress_callback: ProgressCallback | None = None,
    ) -> ModelHandle | None:
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        def report(value: float) -> None:
            if progress_callback is not None:
                progress_callback(value)

        report(0.05)
        if params.n_threads > 0:
            torch.set_num_threads(int(params.n_threads))

        model_dir, extra_kwargs = _split_model_path(path)
        tokenizer = AutoTokenizer.from_pretrained(model_dir, **extra_kwargs)
        report(0.25)

        model = AutoModelForCausalLM.from_pretrained(
            model_dir,
            torch_dtype=_dtype_from_string(params.dtype),
            **extra_kwargs,
        )
        report(0.85)
        model.to(params.device)
        model.eval()
        report(0.95)

        return ModelHandle(
            path=path,
            model=model,
            tokenizer=tokenizer,
            eos_token_ids=self._eos_token_ids(model, tokenizer),
            extra={"device": params.device, "dtype": params.dtype},
        )

    def new_context(self, handle: ModelHandle, params: ContextParams) -> DecodeContext | None:
        from transformers import DynamicCache

        n_ctx = int(params.n_ctx)
        max_positions = getattr(handle.model.config, "max_position_embeddings", None)
        if max_positions is None:
            max_positions = getattr(handle.model.config, "n_positions", None)
        if isinstance(max_positions, int) and max_positions > 0:
            n_ctx = min(n_ctx, max_positions)

        return DecodeContext(
            n_ctx=n_ctx,
            n_threads=int(params.n_threads),
            cache=DynamicCache(),
            extra={"model": handle.model, "generated": [], "emitted": "", "pending": 0},
        )

    def clear_context(self, context: DecodeContext) -> None:
        from transformers import DynamicCache

        context.cache = DynamicCache()
        context.position = 0
        context.logits = None
        context.extra["generated"] = []
        context.extra["emitted"] = ""
        context.extra["pending"] = 0

    def free_context(self, context: DecodeContext) -> None:
        context.extra.pop("model", None)
        super().free_context(context)

    def free_model(self, handle: ModelHandle) -> None:
        """Drop the model and free accelerator memory."""
        import torch

        super().free_model(handle)
        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def tokenize(self, handle: ModelHandle, text: str) -> list[int]:
        try:
            ids = handle.tokenizer.encode(text, add_special_tokens=True)
        except Exception as exc:
            raise TokenizeError(f"Failed to tokenize prompt: {exc}") from exc
        ids = [int(t) for t in ids]
        if any(t < 0 for t in ids):
            raise TokenizeError("Tokenizer produced negative token ids.")
        return ids

    def token_to_text(self, handle: ModelHandle, context: DecodeContext, token: int) -> str:
        # Decode the whole generated sequence and emit the new suffix: per-token
        # decode loses leading spaces and splits multi-byte characters.
        generated: list[int] = context.extra.setdefault("generated", [])
        generated.append(int(token))
        text = handle.tokenizer.decode(generated, skip_special_tokens=False)

        # A trailing U+FFFD is usually a UTF-8 sequence cut mid-character. Hold it
        # for at most the length of one sequence; past that it is real output.
        pending = context.extra.get("pending", 0) + 1
        if text.endswith("\ufffd") and pending < _MAX_UTF8_LEN:
            context.extra["pending"] = pending
            return ""
        return self._take_new_text(context, text)

    def flush_text(self, handle: ModelHandle, context: DecodeContext) -> str:
        generated = context.extra.get("generated") or []
        if not context.extra.get("pending") or not generated:
            return ""
        return self._take_new_text(context, handle.tokenizer.decode(generated, skip_special_tokens=False))

    @staticmethod
    def _take_new_text(context: DecodeContext, text: str) -> str:
        # If normalization rewrote earlier text, only the emitted length is trusted.
        emitted: str = context.extra.get("emitted", "")
        context.extra["emitted"] = text
        context.extra["pending"] = 0
        return text[len(emitted) :]

    def is_end_of_sequence(self, handle: ModelHandle, token: int) -> bool:
        return int(token) in handle.eos_token_ids

    # -------------------------------------------------------------------------
    # Decode / Sample
    # -------------------------------------------------------------------------

    def decode(self, context: DecodeContext, batch: Batch) -> None:
        import torch

        model = context.extra.get("model")
        if model is None:
            raise DecodeError("Decode context is not bound to a model.")
        if len(batch) == 0:
            raise DecodeError("Cannot decode an empty batch.", position=context.position)

        positions = batch.positions
        if positions[0] != context.position or positions != list(range(positions[0], positions[0] + len(batch))):
            raise DecodeError(
                f"Batch positions {positions[0]}..{positions[-1]} do not continue the cache at {context.position}.",
                position=context.position,
            )
        if positions[-1] >= context.n_ctx:
            raise DecodeError(
                f"Context window exhausted (n_ctx={context.n_ctx}).",
                position=positions[-1],
            )

        device = model.device
        input_ids = torch.tensor([batch.tokens], dtype=torch.long, device=device)
        cache_position = torch.tensor(positions, dtype=torch.long, device=device)

        try:
            with torch.no_grad():
                outputs = model(
                    input_ids,
                    past_key_values=context.cache,
                    cache_position=cache_position,
                    use_cache=True,
                )
        except Exception as exc:
            raise DecodeError(f"Forward pass failed: {exc}", position=positions[0]) from exc

        context.cache = outputs.past_key_values
        context.position = positions[-1] + 1

        flagged = batch.logits_indices
        context.logits = outputs.logits[0, flagged[-1], :] if flagged else None

    def sample_next(self, context: DecodeContext, sampler: Any) -> int:
        if context.logits is None:
            raise DecodeError("No logits available; the last batch did not request any.")
        return sampler.sample(context.logits)

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    def model_info(self, handle: ModelHandle) -> dict[str, Any]:
        config = getattr(handle.model, "config", None)
        return {
            "model_path": handle.path,
            "runtime": self.name,
            "model_type": getattr(config, "model_type", None),
            "device": handle.extra.get("device"),
            "dtype": handle.extra.get("dtype"),
            "vocab_size": getattr(config, "vocab_size", None),
        }

    @staticmethod
    def _eos_token_ids(model: Any, tokenizer: Any) -> frozenset[int]:
        ids: set[int] = set()
        candidates = [
            getattr(tokenizer, "eos_token_id", None),
            getattr(getattr(model, "generation_config", None), "eos_token_id", None),
            getattr(getattr(model, "config", None), "eos_token_id", None),
        ]
        for value in candidates:
            if value is None:
                continue
            if isinstance(value, (list, tuple, set)):
                ids.update(int(v) for v in value)
            else:
                ids.add(int(value))
        return frozenset(ids)
