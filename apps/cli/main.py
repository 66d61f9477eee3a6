"""`pocketllm`: local generation CLI.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from typing import Sequence

from apps.cli.output import format_table, print_json
from pocketllm.engine import EngineConfig, EngineStateError, InferenceEngine, SamplerConfig, TokenizeError
from pocketllm.engine.discovery import DEFAULT_SUFFIXES, find_model_files

PROGRESS_POLL_S = 0.1


def build_parser() -> argparse.ArgumentParser:
    defaults = SamplerConfig()
    p = argparse.ArgumentParser(prog="pocketllm", description="On-device text generation")
    p.add_argument(
        "--log-level",
        default=os.environ.get("POCKETLLM_LOG_LEVEL", "WARNING"),
        help="Logging level (default: $POCKETLLM_LOG_LEVEL or WARNING)",
    )

    sub = p.add_subparsers(dest="command")

    gen = sub.add_parser("generate", help="Load a model and generate a completion")
    gen.add_argument("--model", required=True, help="Model file (.gguf) or Hugging Face model directory")
    gen.add_argument("--prompt", help="Prompt text (default: read from stdin)")
    gen.add_argument("--stream", action="store_true", help="Print fragments as they are produced")
    gen.add_argument(
        "--max-tokens",
        type=int,
        default=defaults.max_tokens,
        help="Maximum tokens to generate (default: %(default)s)",
    )
    gen.add_argument(
        "--temperature",
        type=float,
        default=defaults.temperature,
        help="Sampling temperature, 0 = greedy (default: %(default)s)",
    )
    gen.add_argument(
        "--top-p",
        type=float,
        default=defaults.top_p,
        help="Top-p (nucleus) sampling (default: %(default)s)",
    )
    gen.add_argument(
        "--stop",
        action="append",
        default=None,
        help="Stop string; repeatable (default: the ### User:/### System: markers)",
    )
    gen.add_argument("--no-stop", action="store_true", help="Disable the default stop strings")
    gen.add_argument("--threads", type=int, default=None, help="CPU threads (default: cores-1, max 4)")
    gen.add_argument("--seed", type=int, default=None, help="Sampling seed (default: random)")
    gen.add_argument("--runtime", default="transformers", help="Model runtime name (default: %(default)s)")
    gen.add_argument("--device", default="auto", help="Torch device: auto|cpu|cuda|mps (default: auto)")
    gen.add_argument("--dtype", default="float32", help="Torch dtype: float16|bfloat16|float32 (default: float32)")
    gen.add_argument(
        "--context-size",
        type=int,
        default=2048,
        help="Context window in tokens (default: %(default)s)",
    )
    gen.add_argument("--json", action="store_true", help="Print the result as JSON")

    models = sub.add_parser("models", help="List model files found on disk")
    models.add_argument(
        "--dir",
        dest="dirs",
        action="append",
        default=None,
        help="Directory to scan; repeatable (default: ~/Downloads, ~, ~/Models, ~/pocketllm)",
    )
    models.add_argument(
        "--suffix",
        dest="suffixes",
        action="append",
        default=None,
        help=f"File suffix to match; repeatable (default: {' '.join(DEFAULT_SUFFIXES)})",
    )
    models.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    return p


def _watch_progress(engine: InferenceEngine, done: threading.Event) -> None:
    last = -1
    while not done.wait(PROGRESS_POLL_S):
        pct = int(engine.get_load_progress() * 100)
        if pct != last:
            print(f"\r[load] {pct:3d}%", end="", file=sys.stderr, flush=True)
            last = pct
    print("\r[load] done", file=sys.stderr, flush=True)


def cmd_generate(args: argparse.Namespace) -> int:
    from pocketllm.runtime import default_thread_count, resolve_device

    prompt = args.prompt if args.prompt is not None else sys.stdin.read()
    stop: tuple[str, ...] | None = None
    if args.no_stop:
        stop = ()
    elif args.stop:
        stop = tuple(args.stop)

    threads = args.threads if args.threads is not None else default_thread_count()
    sampler = SamplerConfig().merged({"n_threads": threads, "seed": args.seed})
    config = EngineConfig(
        runtime=args.runtime,
        context_size=args.context_size,
        device=resolve_device(args.device),
        dtype=args.dtype,
        sampler=sampler,
    )
    try:
        engine = InferenceEngine(config=config)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    done = threading.Event()
    watcher = threading.Thread(target=_watch_progress, args=(engine, done), daemon=True)
    watcher.start()
    try:
        loaded = engine.load_model(args.model, threads)
    finally:
        done.set()
        watcher.join()
    if not loaded:
        print(f"error: {engine.error_message}", file=sys.stderr)
        return 1

    try:
        kwargs = dict(
            max_tokens=args.max_tokens,
            temperature=args.temperature,
            top_p=args.top_p,
            stop=stop,
        )
        if args.stream and not args.json:
            result = engine.generate_streaming(
                prompt,
                lambda piece: print(piece, end="", flush=True),
                **kwargs,
            )
            print()
        else:
            request = engine.config.sampler.request(prompt, **kwargs)
            result = engine.run(request)
            if not args.json:
                print(result.text)
    except (EngineStateError, TokenizeError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\ninterrupted", file=sys.stderr)
        return 130
    finally:
        engine.unload_model()

    if args.json:
        print_json(
            {
                "text": result.text,
                "finish_reason": result.finish_reason,
                "prompt_tokens": result.prompt_tokens,
                "completion_tokens": result.completion_tokens,
                "tok_per_s": result.timing.tok_per_s,
                "error": None if result.error is None else str(result.error),
            }
        )
    return 0


def cmd_models(args: argparse.Namespace) -> int:
    suffixes = tuple(args.suffixes) if args.suffixes else DEFAULT_SUFFIXES
    paths = find_model_files(args.dirs, suffixes=suffixes)
    if args.json:
        print_json([str(p) for p in paths])
        return 0
    if not paths:
        print("No models found.", file=sys.stderr)
        return 0
    rows = []
    for path in paths:
        kind = "dir" if path.is_dir() else "file"
        size = "-" if path.is_dir() else f"{path.stat().st_size / (1024 * 1024):.0f}MB"
        rows.append([str(path), kind, size])
    print(format_table(["PATH", "KIND", "SIZE"], rows))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    command = args.command
    if command is None:
        parser.print_help()
        return 2
    if command == "generate":
        return cmd_generate(args)
    if command == "models":
        return cmd_models(args)
    parser.error(f"Unknown command: {command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
