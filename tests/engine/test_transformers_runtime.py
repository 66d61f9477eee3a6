import pytest


torch = pytest.importorskip("torch", reason="torch not installed")
transformers = pytest.importorskip("transformers", reason="transformers not installed")
tokenizers = pytest.importorskip("tokenizers", reason="tokenizers not installed")


from pocketllm.engine import EngineConfig, EngineState, InferenceEngine
from pocketllm.engine.adapters.hf import TransformersRuntime, _dtype_from_string, _split_model_path
from pocketllm.engine.batch import Batch
from pocketllm.engine.errors import DecodeError
from pocketllm.engine.registry import get_runtime, list_runtimes
from pocketllm.engine.types import ContextParams, ModelParams


_WORDS = ["<unk>", "<eos>", "hello", "world", "the", "cat", "sat", "on", "mat", "."]


@pytest.fixture(scope="module")
def tiny_model_dir(tmp_path_factory):
    from tokenizers import Tokenizer
    from tokenizers.models import WordLevel
    from tokenizers.pre_tokenizers import Whitespace
    from transformers import GPT2Config, GPT2LMHeadModel, PreTrainedTokenizerFast

    path = tmp_path_factory.mktemp("tiny-gpt2")

    vocab = {w: i for i, w in enumerate(_WORDS)}
    backend = Tokenizer(WordLevel(vocab=vocab, unk_token="<unk>"))
    backend.pre_tokenizer = Whitespace()
    tokenizer = PreTrainedTokenizerFast(tokenizer_object=backend, unk_token="<unk>", eos_token="<eos>")
    tokenizer.save_pretrained(path)

    torch.manual_seed(0)
    config = GPT2Config(
        vocab_size=len(_WORDS),
        n_positions=32,
        n_embd=16,
        n_layer=1,
        n_head=2,
        bos_token_id=1,
        eos_token_id=1,
    )
    GPT2LMHeadModel(config).save_pretrained(path)
    return str(path)


@pytest.fixture
def loaded(tiny_model_dir):
    runtime = TransformersRuntime()
    progress = []
    handle = runtime.load_model(tiny_model_dir, ModelParams(n_threads=1), progress_callback=progress.append)
    context = runtime.new_context(handle, ContextParams(n_ctx=2048, n_threads=1))
    yield runtime, handle, context, progress
    runtime.free_context(context)
    runtime.free_model(handle)


def test_registry_knows_transformers_runtime():
    assert "transformers" in list_runtimes()
    assert isinstance(get_runtime("transformers"), TransformersRuntime)
    with pytest.raises(ValueError, match="Unknown runtime"):
        get_runtime("nope")


def test_dtype_and_path_helpers(tmp_path):
    assert _dtype_from_string("bf16") is torch.bfloat16
    with pytest.raises(ValueError):
        _dtype_from_string("int3")

    gguf = tmp_path / "m.gguf"
    gguf.write_bytes(b"GGUF")
    assert _split_model_path(str(gguf)) == (str(tmp_path), {"gguf_file": "m.gguf"})
    assert _split_model_path(str(tmp_path)) == (str(tmp_path), {})


def test_load_reports_progress_and_metadata(loaded):
    runtime, handle, context, progress = loaded
    assert progress == sorted(progress)
    assert 1 in handle.eos_token_ids
    assert context.n_ctx == 32
    info = runtime.model_info(handle)
    assert info["model_type"] == "gpt2"
    assert info["vocab_size"] == len(_WORDS)


def test_prefill_then_single_token_decode(loaded):
    runtime, handle, context, _ = loaded
    tokens = runtime.tokenize(handle, "the cat sat")
    assert tokens == [4, 5, 6]

    runtime.decode(context, Batch.for_prompt(tokens))
    assert context.position == 3
    assert tuple(context.logits.shape) == (len(_WORDS),)

    runtime.decode(context, Batch.single(7, 3))
    assert context.position == 4

    runtime.clear_context(context)
    assert context.position == 0
    assert context.logits is None


def test_decode_rejects_gaps_and_overflow(loaded):
    runtime, handle, context, _ = loaded
    with pytest.raises(DecodeError):
        runtime.decode(context, Batch.single(4, 5))

    with pytest.raises(DecodeError, match="Context window"):
        runtime.decode(context, Batch.for_prompt([4] * 40))


def test_token_to_text_emits_new_suffix(loaded):
    runtime, handle, context, _ = loaded
    runtime.clear_context(context)
    first = runtime.token_to_text(handle, context, 5)
    second = runtime.token_to_text(handle, context, 6)
    assert "cat" in first
    assert "sat" in second
    assert "cat" not in second


def test_engine_end_to_end(tiny_model_dir):
    engine = InferenceEngine(config=EngineConfig(context_size=32))
    assert engine.load_model(tiny_model_dir, n_threads=1)
    try:
        result = engine.run(engine.config.sampler.request("the cat", max_tokens=5, temperature=0.0, stop=[]))
        assert result.finish_reason in ("eos", "length")
        assert result.completion_tokens <= 5
        assert result.prompt_tokens == 2
    finally:
        engine.unload_model()
    assert engine.state is EngineState.UNLOADED
