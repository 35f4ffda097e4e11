from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest


@pytest.fixture
def write_payload(tmp_path: Path) -> Callable[[bytes], Path]:
    def _write(raw: bytes, name: str = "payload.bin") -> Path:
        path = tmp_path / name
        _ = path.write_bytes(raw)
        return path

    return _write
