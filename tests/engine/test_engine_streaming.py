import asyncio
import threading
import time

import pytest

from fake_runtime import EOS, FakeRuntime, encode_text
from pocketllm.engine import (
    ConsumerCallbackError,
    EngineConfig,
    EngineState,
    EngineStateError,
    InferenceEngine,
)


def _loaded(model_file, text="hello world"):
    runtime = FakeRuntime(lambda prompt: encode_text(text) + [EOS])
    engine = InferenceEngine(runtime, config=EngineConfig())
    assert engine.load_model(model_file)
    return engine, runtime


def test_fragments_arrive_in_order(model_file):
    engine, _ = _loaded(model_file)
    pieces = []
    result = engine.generate_streaming("Hi", pieces.append, max_tokens=50)
    assert pieces == list("hello world")
    assert result.text == "hello world"
    assert result.finish_reason == "eos"
    assert engine.state is EngineState.READY


def test_streamed_text_equals_blocking_text_with_stops(model_file):
    engine, _ = _loaded(model_file, "Done #\n### System: hidden")
    pieces = []
    streamed = engine.generate_streaming("Hi", pieces.append)
    blocking = engine.generate("Hi")
    assert "".join(pieces) == streamed.text == blocking == "Done #\n"
    assert streamed.finish_reason == "stop"


def test_zero_max_tokens_never_calls_consumer(model_file):
    engine, _ = _loaded(model_file)
    pieces = []
    result = engine.generate_streaming("Hi", pieces.append, max_tokens=0)
    assert pieces == []
    assert result.text == ""
    assert result.finish_reason == "length"


def test_consumer_exception_surfaces_and_engine_stays_ready(model_file):
    engine, runtime = _loaded(model_file)
    seen = []

    def on_token(piece):
        seen.append(piece)
        if len(seen) == 2:
            raise ValueError("ui closed")

    with pytest.raises(ConsumerCallbackError) as info:
        engine.generate_streaming("Hi", on_token, max_tokens=50)
    assert isinstance(info.value.__cause__, ValueError)
    assert seen == ["h", "e"]
    assert engine.state is EngineState.READY
    assert engine.generate("Hi") == "hello world"


def test_astream_yields_events_then_final(model_file):
    engine, _ = _loaded(model_file, "abc")

    async def collect():
        return [event async for event in engine.astream("Hi", max_tokens=10)]

    events = asyncio.run(collect())
    assert "".join(e.text for e in events) == "abc"
    assert events[-1].final
    assert events[-1].finish_reason == "eos"
    assert not any(e.final for e in events[:-1])
    assert engine.state is EngineState.READY


def test_astream_reraises_engine_errors():
    engine = InferenceEngine(FakeRuntime(), config=EngineConfig())

    async def collect():
        return [event async for event in engine.astream("Hi")]

    with pytest.raises(EngineStateError):
        asyncio.run(collect())


def test_astream_early_exit_cancels(model_file):
    engine, _ = _loaded(model_file, "z" * 500)

    async def first_only():
        agen = engine.astream("Hi", max_tokens=500)
        event = await agen.__anext__()
        await agen.aclose()
        return event

    event = asyncio.run(first_only())
    assert event.text == "z"
    # The worker notices the cancellation and hands the engine back.
    for _ in range(500):
        if engine.state is EngineState.READY:
            break
        time.sleep(0.01)
    assert engine.state is EngineState.READY


def _held_at_second_decode(model_file):
    """Engine whose generation pauses inside the second decode until released."""
    engine, runtime = _loaded(model_file, "z" * 500)
    release = threading.Event()

    def on_decode(batch):
        if len(runtime.decode_calls) == 2:
            release.wait(5)

    runtime.on_decode = on_decode
    return engine, release


def test_astream_ends_after_cancel_generation(model_file):
    engine, release = _held_at_second_decode(model_file)

    async def consume():
        events = []
        async for event in engine.astream("Hi", max_tokens=500):
            events.append(event)
            if len(events) == 1:
                engine.cancel_generation()
                release.set()
        return events

    events = asyncio.run(asyncio.wait_for(consume(), timeout=5))
    assert events[0].text == "z"
    assert events[-1].final
    assert events[-1].finish_reason == "cancelled"
    assert engine.state is EngineState.READY


def test_astream_ends_after_unload(model_file):
    engine, release = _held_at_second_decode(model_file)

    async def consume():
        events = []
        unloading = None
        async for event in engine.astream("Hi", max_tokens=500):
            events.append(event)
            if unloading is None:
                token = engine._active_cancel
                unloading = asyncio.ensure_future(asyncio.to_thread(engine.unload_model))
                while not token.is_cancelled:
                    await asyncio.sleep(0.001)
                release.set()
        await unloading
        return events

    events = asyncio.run(asyncio.wait_for(consume(), timeout=5))
    assert events[-1].final
    assert events[-1].finish_reason == "cancelled"
    assert engine.state is EngineState.UNLOADED
    assert not engine.is_model_loaded()
