"""Locate model files on local storage."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Sequence

DEFAULT_SUFFIXES: tuple[str, ...] = (".gguf",)


def default_search_dirs() -> list[Path]:
    """Common places people drop downloaded models."""
    home = Path.home()
    return [
        home / "Downloads",
        home,
        home / "Models",
        home / "pocketllm",
    ]


def _is_hf_model_dir(path: Path) -> bool:
    return path.is_dir() and (path / "config.json").is_file()


def find_model_files(
    search_dirs: Iterable[str | os.PathLike[str]] | None = None,
    *,
    suffixes: Sequence[str] = DEFAULT_SUFFIXES,
) -> list[Path]:
    """Find loadable models in `search_dirs` (non-recursive).

    Matches files whose name ends with one of `suffixes` (case-insensitive)
    and Hugging Face model directories (a folder containing config.json).
    Results are deduplicated by absolute path, newest first.
    """
    dirs = default_search_dirs() if search_dirs is None else [Path(d) for d in search_dirs]
    wanted = tuple(s.lower() for s in suffixes)

    found: dict[str, Path] = {}
    for directory in dirs:
        if not directory.is_dir():
            continue
        try:
            entries = list(directory.iterdir())
        except OSError:
            continue
        for entry in entries:
            if (entry.is_file() and entry.name.lower().endswith(wanted)) or _is_hf_model_dir(entry):
                found.setdefault(str(entry.resolve()), entry.resolve())

    return sorted(found.values(), key=lambda p: p.stat().st_mtime, reverse=True)
