import pytest

from pocketllm.engine.batch import Batch
from pocketllm.engine.cancellation import CancellationToken
from pocketllm.engine.engine import EngineConfig
from pocketllm.engine.sampling import SamplerConfig
from pocketllm.engine.types import GenerationRequest


def test_prompt_batch_requests_logits_only_for_last_position():
    batch = Batch.for_prompt([5, 6, 7])
    assert batch.tokens == [5, 6, 7]
    assert batch.positions == [0, 1, 2]
    assert batch.logits_indices == [2]
    assert all(e.seq_id == 0 for e in batch)


def test_batch_overflow_is_a_programming_error():
    batch = Batch(1)
    batch.add(1, 0)
    with pytest.raises(ValueError, match="Batch is full"):
        batch.add(2, 1)


def test_batch_capacity_must_be_positive():
    with pytest.raises(ValueError):
        Batch(0)


def test_single_token_batch():
    batch = Batch.single(42, 17)
    assert len(batch) == 1
    assert batch.positions == [17]
    assert batch.logits_indices == [0]


def test_cancellation_token_reset():
    token = CancellationToken()
    assert not token.is_cancelled
    token.cancel()
    assert token.is_cancelled
    token.reset()
    assert not token.is_cancelled


def test_sampler_defaults_fill_request():
    cfg = SamplerConfig(temperature=0.5, top_p=0.9, max_tokens=12, stop=("###",), seed=7)
    req = cfg.request("hi", max_tokens=3)
    assert req == GenerationRequest(prompt="hi", max_tokens=3, temperature=0.5, top_p=0.9, stop=("###",), seed=7)


def test_sampler_request_empty_stop_overrides_defaults():
    req = SamplerConfig().request("hi", stop=[])
    assert req.stop == ()


def test_sampler_merged_from_dict():
    cfg = SamplerConfig().merged({"temperature": 0.2, "n_threads": "8", "stop": ["a", "b"]})
    assert cfg.temperature == 0.2
    assert cfg.n_threads == 8
    assert cfg.stop == ("a", "b")


@pytest.mark.parametrize(
    "override",
    [
        {"temperature": -1},
        {"top_p": 0},
        {"top_p": 1.5},
        {"max_tokens": -1},
        {"n_threads": 0},
        {"n_threads": True},
        {"unknown": 1},
    ],
)
def test_sampler_merged_rejects_invalid(override):
    with pytest.raises(ValueError):
        SamplerConfig().merged(override)


def test_sampler_merged_none_is_identity():
    cfg = SamplerConfig()
    assert cfg.merged(None) is cfg


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_tokens": -1},
        {"max_tokens": 1.5},
        {"temperature": -0.1},
        {"top_p": 0.0},
        {"stop": ["ok", 3]},
    ],
)
def test_generation_request_validation(kwargs):
    with pytest.raises(ValueError):
        GenerationRequest(prompt="x", **kwargs)


def test_engine_config_validation():
    with pytest.raises(ValueError):
        EngineConfig(context_size=0).validate()
    EngineConfig().validate()
