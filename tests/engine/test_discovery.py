import os

from pocketllm.engine.discovery import default_search_dirs, find_model_files


def _touch(path, mtime):
    path.write_bytes(b"GGUF")
    os.utime(path, (mtime, mtime))
    return path


def test_finds_gguf_files_newest_first(tmp_path):
    old = _touch(tmp_path / "old.gguf", 1_000)
    new = _touch(tmp_path / "New.GGUF", 2_000)
    _touch(tmp_path / "notes.txt", 3_000)

    assert find_model_files([tmp_path]) == [new.resolve(), old.resolve()]


def test_finds_hf_model_directories(tmp_path):
    model_dir = tmp_path / "tiny-llama"
    model_dir.mkdir()
    (model_dir / "config.json").write_text("{}")
    (tmp_path / "empty-dir").mkdir()

    assert find_model_files([tmp_path]) == [model_dir.resolve()]


def test_is_not_recursive(tmp_path):
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    _touch(nested / "deep.gguf", 1_000)
    assert find_model_files([tmp_path]) == []


def test_duplicate_dirs_and_missing_dirs(tmp_path):
    only = _touch(tmp_path / "m.gguf", 1_000)
    found = find_model_files([tmp_path, tmp_path / ".", tmp_path / "missing"])
    assert found == [only.resolve()]


def test_custom_suffixes(tmp_path):
    _touch(tmp_path / "a.gguf", 1_000)
    bin_file = _touch(tmp_path / "b.bin", 2_000)
    assert find_model_files([tmp_path], suffixes=(".bin",)) == [bin_file.resolve()]


def test_default_search_dirs_are_under_home():
    dirs = default_search_dirs()
    assert dirs
    assert all(str(d).startswith(os.path.expanduser("~")) for d in dirs)
