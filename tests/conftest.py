from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

from tubeproxy.common.settings import ProxySettings


EMITTER_SOURCE = textwrap.dedent(
    """
    import sys
    import time

    identifier, count = sys.argv[1], int(sys.argv[2])
    mode = sys.argv[3] if len(sys.argv) > 3 else "exit"
    out = sys.stdout.buffer
    payload = (identifier.encode("ascii") * (count // len(identifier) + 1))[:count]
    out.write(payload)
    out.flush()
    if mode == "hang":
        time.sleep(60)
    elif mode == "fail":
        sys.exit(3)
    """
)


@pytest.fixture
def emitter_script(tmp_path: Path) -> Path:
    """A stand-in downloader writing ``count`` bytes derived from the identifier to stdout."""

    path = tmp_path / "emitter.py"
    path.write_text(EMITTER_SOURCE, encoding="utf-8")
    return path


@pytest.fixture
def emitter_command(emitter_script: Path):
    def _command(count: int, mode: str = "exit") -> list[str]:
        return [sys.executable, str(emitter_script), "{identifier}", str(count), mode]

    return _command


@pytest.fixture
def proxy_settings(tmp_path: Path, emitter_script: Path):
    def _settings(**overrides) -> ProxySettings:
        values = {
            "storage_path": tmp_path / "cache",
            "blacklist_path": tmp_path / "blacklist.txt",
            "whitelist_path": tmp_path / "whitelist.txt",
            "downloader_command": f'"{sys.executable}" "{emitter_script}" {{identifier}} 50',
            "download_limit_bytes": 1024,
            "log_level": "WARNING",
        }
        values.update(overrides)
        return ProxySettings(**values)

    return _settings
