from __future__ import annotations

import pytest

from fake_runtime import FakeRuntime


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "tiny.gguf"
    path.write_bytes(b"GGUF")
    return str(path)


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()
