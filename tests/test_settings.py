from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from tubeproxy.common.settings import DEFAULT_DOWNLOADER_COMMAND, ProxySettings, split_bind
from tubeproxy.proxy.main import parse_args


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in (
        "TUBEPROXY_BIND",
        "TUBEPROXY_CACHE_DIR",
        "TUBEPROXY_CACHE_TTL",
        "TUBEPROXY_DOWNLOAD_LIMIT",
        "TUBEPROXY_DOWNLOADER_COMMAND",
        "TUBEPROXY_LOG_DIR",
        "TUBEPROXY_METRICS_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = ProxySettings()
    assert settings.listen_address == ("0.0.0.0", 81)
    assert settings.storage_path == Path("./cache")
    assert settings.cache_ttl_seconds == 1200
    assert settings.sweep_interval_seconds == 300
    assert settings.address_list_refresh_seconds == 60
    assert settings.download_limit_bytes == 10 * 1024 * 1024
    assert settings.read_chunk_bytes == 1024
    assert settings.downloader_command == DEFAULT_DOWNLOADER_COMMAND
    assert settings.downloader_argv[0] == "yt-dlp"
    assert settings.downloader_argv[-1] == "https://www.youtube.com/watch?v={identifier}"
    assert settings.metrics_token is None
    assert settings.log_directory is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("TUBEPROXY_BIND", "127.0.0.1:8081")
    monkeypatch.setenv("TUBEPROXY_CACHE_DIR", "/var/cache/tubeproxy")
    monkeypatch.setenv("TUBEPROXY_CACHE_TTL", "60")
    monkeypatch.setenv("TUBEPROXY_DOWNLOAD_LIMIT", "0")
    monkeypatch.setenv("TUBEPROXY_DOWNLOADER_COMMAND", "fetcher --out - '{url}'")
    monkeypatch.setenv("TUBEPROXY_LOG_DIR", "")
    monkeypatch.setenv("TUBEPROXY_METRICS_TOKEN", "token-value")

    settings = ProxySettings()

    assert settings.listen_address == ("127.0.0.1", 8081)
    assert settings.storage_path == Path("/var/cache/tubeproxy")
    assert settings.cache_ttl_seconds == 60
    assert settings.download_limit_bytes == 0
    assert settings.downloader_argv == ["fetcher", "--out", "-", "{url}"]
    assert settings.log_directory is None
    assert settings.metrics_token.get_secret_value() == "token-value"


@pytest.mark.parametrize("command", ["", "   ", "yt-dlp -o - https://example.invalid/fixed"])
def test_downloader_command_must_reference_identifier(command):
    with pytest.raises(ValidationError):
        ProxySettings(downloader_command=command)


@pytest.mark.parametrize("field", ["read_chunk_bytes", "sweep_interval_seconds"])
def test_sizes_and_intervals_must_be_positive(field):
    with pytest.raises(ValidationError):
        ProxySettings(**{field: 0})


@pytest.mark.parametrize(
    "bind, expected",
    [
        ("0.0.0.0:81", ("0.0.0.0", 81)),
        ("localhost", ("localhost", 81)),
        (":9000", ("0.0.0.0", 9000)),
        ("[::1]:8080", ("::1", 8080)),
        ("[::]", ("::", 81)),
        ("::1", ("::1", 81)),
    ],
)
def test_split_bind(bind, expected):
    assert split_bind(bind) == expected


def test_split_bind_rejects_bad_port():
    with pytest.raises(ValueError):
        split_bind("127.0.0.1:http")


def test_cli_bind_argument_is_optional():
    assert parse_args([]).bind is None
    assert parse_args(["127.0.0.1:8000"]).bind == "127.0.0.1:8000"
