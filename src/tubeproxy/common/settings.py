"""Application configuration for the media proxy."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DOWNLOADER_COMMAND = "yt-dlp -f 251 --quiet -o - https://www.youtube.com/watch?v={identifier}"


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def split_bind(bind: str, default_port: int = 81) -> tuple[str, int]:
    """Split ``host:port`` (IPv6 hosts in brackets) into its parts."""

    value = bind.strip()
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port = rest.lstrip(":")
    elif value.count(":") == 1:
        host, _, port = value.partition(":")
    else:
        host, port = value, ""
    if not host:
        host = "0.0.0.0"
    if not port:
        return host, default_port
    try:
        return host, int(port)
    except ValueError as exc:
        raise ValueError(f"Invalid port in bind address: {bind!r}") from exc


class ProxySettings(BaseSettings):
    """Runtime settings for the media proxy service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    bind: str = env_field("0.0.0.0:81", "TUBEPROXY_BIND")
    storage_path: Path = env_field(Path("./cache"), "TUBEPROXY_CACHE_DIR")
    blacklist_path: Path = env_field(Path("./blacklist.txt"), "TUBEPROXY_BLACKLIST")
    whitelist_path: Path = env_field(Path("./whitelist.txt"), "TUBEPROXY_WHITELIST")
    address_list_refresh_seconds: float = env_field(60.0, "TUBEPROXY_ACCESS_LIST_REFRESH")
    cache_ttl_seconds: float = env_field(20 * 60, "TUBEPROXY_CACHE_TTL")
    sweep_interval_seconds: float = env_field(300.0, "TUBEPROXY_SWEEP_INTERVAL")
    download_limit_bytes: int = env_field(10 * 1024 * 1024, "TUBEPROXY_DOWNLOAD_LIMIT")
    read_chunk_bytes: int = env_field(1024, "TUBEPROXY_READ_CHUNK")
    downloader_command: str = env_field(DEFAULT_DOWNLOADER_COMMAND, "TUBEPROXY_DOWNLOADER_COMMAND")
    process_shutdown_grace_seconds: float = env_field(5.0, "TUBEPROXY_PROCESS_GRACE")
    metrics_token: Optional[SecretStr] = env_field(None, "TUBEPROXY_METRICS_TOKEN")
    log_level: str = env_field("INFO", "TUBEPROXY_LOG_LEVEL")
    log_directory: Optional[Path] = env_field(None, "TUBEPROXY_LOG_DIR")
    otel_exporter_endpoint: Optional[str] = env_field(None, "TUBEPROXY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "TUBEPROXY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "TUBEPROXY_OTEL_SAMPLER_RATIO")

    @field_validator("downloader_command")
    @classmethod
    def _validate_downloader_command(cls, value: str) -> str:
        parts = shlex.split(value)
        if not parts:
            raise ValueError("Downloader command must not be empty")
        if not any("{identifier}" in part or "{url}" in part for part in parts):
            raise ValueError("Downloader command must reference {identifier} or {url}")
        return value

    @field_validator("read_chunk_bytes", "sweep_interval_seconds")
    @classmethod
    def _positive(cls, value, info):
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("log_directory", mode="before")
    @classmethod
    def _blank_log_directory(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def downloader_argv(self) -> list[str]:
        return shlex.split(self.downloader_command)

    @property
    def listen_address(self) -> tuple[str, int]:
        return split_bind(self.bind)
