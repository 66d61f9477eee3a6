"""Prefill + incremental decode loop."""

from __future__ import annotations

import logging
import time
from typing import Callable

from .batch import Batch
from .cancellation import CancellationToken
from .errors import ConsumerCallbackError, DecodeError, TokenizeError
from .session import ModelSession
from .stop import StopSequenceMatcher
from .types import FinishReason, GenerationRequest, GenerationResult, Timing, TokenEvent

logger = logging.getLogger(__name__)

EventSink = Callable[[TokenEvent], None]


class GenerationLoop:
    """Runs one generation request against a loaded ModelSession.

    Fragments are delivered to the sink synchronously and in generation
    order. Text that could still turn out to be the beginning of a stop
    string is held back until it is either confirmed or cut, so the streamed
    fragments always concatenate to the returned text.
    """

    def __init__(self, session: ModelSession) -> None:
        self._session = session

    def run(
        self,
        request: GenerationRequest,
        *,
        cancel: CancellationToken,
        sink: EventSink | None = None,
    ) -> GenerationResult:
        """Generate a completion for `request`.

        Raises:
            TokenizeError: the prompt could not be encoded.
            ConsumerCallbackError: `sink` raised; generation is aborted.

        Decode failures are not raised: prefill failure yields an empty
        result and incremental failure the partial text, both with
        finish_reason="error" and the DecodeError attached.
        """
        runtime = self._session.runtime
        handle, context = self._session.acquire()

        started = time.monotonic()
        first_token_at: float | None = None
        completion_tokens = 0
        emitted = 0
        finish_reason: FinishReason = "length"
        error: DecodeError | None = None

        def deliver(event: TokenEvent) -> None:
            if sink is None:
                return
            try:
                sink(event)
            except Exception as exc:
                logger.error("Token consumer raised; aborting generation: %s", exc)
                raise ConsumerCallbackError(f"Token consumer failed: {exc}") from exc

        tokens = runtime.tokenize(handle, request.prompt)
        if not tokens:
            raise TokenizeError("Prompt encoded to zero tokens.")
        prompt_tokens = len(tokens)
        logger.debug("Prompt tokens: %d, generating up to %d tokens", prompt_tokens, request.max_tokens)

        # Always start from an empty cache so requests never see each other's state.
        runtime.clear_context(context)

        matcher = StopSequenceMatcher(request.stop)

        try:
            runtime.decode(context, Batch.for_prompt(tokens))
        except DecodeError as exc:
            logger.warning("Failed to evaluate prompt: %s", exc)
            deliver(TokenEvent("", final=True, finish_reason="error"))
            return GenerationResult(
                text="",
                finish_reason="error",
                prompt_tokens=prompt_tokens,
                timing=Timing(total_s=max(time.monotonic() - started, 0.0)),
                error=exc,
            )

        prefill_done = time.monotonic()
        sampler = runtime.new_sampler(request)
        n_cur = prompt_tokens

        for _ in range(request.max_tokens):
            if cancel.is_cancelled:
                logger.info("Generation cancelled after %d tokens", completion_tokens)
                finish_reason = "cancelled"
                break

            token = runtime.sample_next(context, sampler)
            if first_token_at is None:
                first_token_at = time.monotonic()

            if runtime.is_end_of_sequence(handle, token):
                logger.debug("End of generation token reached")
                finish_reason = "eos"
                break

            completion_tokens += 1
            piece = runtime.token_to_text(handle, context, token)
            if piece:
                match = matcher.feed(piece)
                if match is not None:
                    logger.debug("Stop string %r hit at token %d", match.stop, completion_tokens)
                    finish_reason = "stop"
                    break

                safe_end = matcher.safe_length()
                if safe_end > emitted:
                    deliver(TokenEvent(matcher.text[emitted:safe_end]))
                    emitted = safe_end

            try:
                runtime.decode(context, Batch.single(token, n_cur))
            except DecodeError as exc:
                logger.warning("Failed to evaluate token at position %d: %s", n_cur, exc)
                finish_reason = "error"
                error = exc
                break
            n_cur += 1

        # Characters the detokenizer was still holding (e.g. an unfinished UTF-8 sequence).
        if finish_reason != "stop":
            tail = runtime.flush_text(handle, context)
            if tail and matcher.feed(tail) is not None:
                finish_reason = "stop"

        # Flush whatever was held back for a stop match that never completed.
        text = matcher.text
        if len(text) > emitted:
            deliver(TokenEvent(text[emitted:]))
        deliver(TokenEvent("", final=True, finish_reason=finish_reason))

        ended = time.monotonic()
        decode_s = None if first_token_at is None else max(ended - first_token_at, 0.0)
        tok_per_s = None
        if decode_s and completion_tokens > 0:
            tok_per_s = completion_tokens / decode_s

        logger.info(
            "Generated %d tokens, %d chars (finish_reason=%s)",
            completion_tokens,
            len(text),
            finish_reason,
        )
        return GenerationResult(
            text=text,
            finish_reason=finish_reason,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            timing=Timing(
                prefill_s=max(prefill_done - started, 0.0),
                decode_s=decode_s,
                total_s=max(ended - started, 0.0),
                tok_per_s=tok_per_s,
            ),
            error=error,
        )
