"""Generation defaults and the token sampler chain.

The chain mirrors the classic llama.cpp ordering:
nucleus (top-p) filter -> temperature scaling -> categorical draw.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from .types import GenerationRequest

if TYPE_CHECKING:
    import torch


@dataclass(frozen=True)
class SamplerConfig:
    """Engine-wide generation defaults.

    Notes:
    - `seed=None` draws from an entropy-seeded generator; pass an integer for
      reproducible sampling.
    - `n_threads` is the CPU thread count handed to the runtime at load time.
    """

    temperature: float = 0.7
    top_p: float = 0.85
    max_tokens: int = 256
    stop: tuple[str, ...] = ("### User:", "### System:")
    n_threads: int = 4
    seed: int | None = None

    def validate(self) -> None:
        if self.temperature is None or self.temperature < 0:
            raise ValueError("'sampler.temperature' must be >= 0.")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError("'sampler.top_p' must be in (0, 1].")
        if self.max_tokens < 0:
            raise ValueError("'sampler.max_tokens' must be >= 0.")
        if self.n_threads <= 0:
            raise ValueError("'sampler.n_threads' must be > 0.")

    def merged(self, override: Any | None) -> "SamplerConfig":
        """Merge an override given as a SamplerConfig or a dict of fields."""
        if override is None:
            return self
        if isinstance(override, SamplerConfig):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("'sampler' must be an object.")

        data: dict[str, Any] = dict(override)
        unknown = set(data) - {"temperature", "top_p", "max_tokens", "stop", "n_threads", "seed"}
        if unknown:
            raise ValueError(f"Unknown sampler option(s): {', '.join(sorted(unknown))}.")

        merged = SamplerConfig(
            temperature=float(data.get("temperature", self.temperature)),
            top_p=float(data.get("top_p", self.top_p)),
            max_tokens=_coerce_int(data["max_tokens"], "max_tokens", min_value=0)
            if "max_tokens" in data
            else self.max_tokens,
            stop=tuple(data["stop"]) if "stop" in data else self.stop,
            n_threads=_coerce_int(data["n_threads"], "n_threads")
            if "n_threads" in data
            else self.n_threads,
            seed=data.get("seed", self.seed),
        )
        merged.validate()
        return merged

    def request(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        stop: Sequence[str] | None = None,
        seed: int | None = None,
    ) -> GenerationRequest:
        """Build a GenerationRequest, filling unspecified fields from these defaults."""
        return GenerationRequest(
            prompt=prompt,
            max_tokens=self.max_tokens if max_tokens is None else max_tokens,
            temperature=self.temperature if temperature is None else temperature,
            top_p=self.top_p if top_p is None else top_p,
            stop=tuple(self.stop if stop is None else stop),
            seed=self.seed if seed is None else seed,
        )


def _coerce_int(value: Any, name: str, *, min_value: int = 1) -> int:
    if isinstance(value, bool):
        raise ValueError(f"'sampler.{name}' must be an integer.")
    try:
        out = int(value)
    except Exception as exc:
        raise ValueError(f"'sampler.{name}' must be an integer.") from exc
    if out < min_value:
        raise ValueError(f"'sampler.{name}' must be >= {min_value}.")
    return out


@dataclass
class SamplerChain:
    """Stateful sampler for one generation request.

    The generator is created once per request so a fixed seed reproduces the
    same sequence of draws.
    """

    temperature: float
    top_p: float
    seed: int | None = None
    _generator: Any = field(default=None, init=False, repr=False)

    @classmethod
    def from_request(cls, request: GenerationRequest) -> "SamplerChain":
        return cls(temperature=request.temperature, top_p=request.top_p, seed=request.seed)

    def _rng(self, device: Any) -> "torch.Generator":
        import torch

        if self._generator is None:
            gen = torch.Generator(device=device)
            if self.seed is None:
                gen.seed()
            else:
                gen.manual_seed(int(self.seed))
            self._generator = gen
        return self._generator

    def sample(self, logits: "torch.Tensor") -> int:
        """Pick the next token id from a 1-D (vocab,) or 2-D (1, vocab) logits tensor."""
        import torch

        logits = logits.reshape(-1).float()

        if self.temperature == 0:
            return int(torch.argmax(logits).item())

        # Nucleus filter on the unscaled distribution (min_keep=1).
        if self.top_p < 1.0:
            logits = top_p_filter(logits, self.top_p)

        # Numerical stability: fp32 softmax, sanitize before the draw.
        probs = torch.softmax(logits / float(self.temperature), dim=-1)
        if torch.isnan(probs).any() or torch.isinf(probs).any():
            probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)
            if probs.sum() <= 0:
                return int(torch.argmax(logits).item())
            probs = probs / probs.sum()

        token = torch.multinomial(probs, 1, generator=self._rng(probs.device))
        return int(token.item())


def top_p_filter(logits: "torch.Tensor", top_p: float) -> "torch.Tensor":
    """Mask logits outside the smallest set whose probability mass reaches top_p."""
    import torch

    sorted_logits, sorted_idx = torch.sort(logits, descending=True)
    cumulative = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)

    # Drop a token when the mass *before* it already reaches top_p; always keep the first.
    remove = (cumulative - torch.softmax(sorted_logits, dim=-1)) >= top_p
    remove[0] = False

    filtered = logits.clone()
    filtered[sorted_idx[remove]] = float("-inf")
    return filtered
