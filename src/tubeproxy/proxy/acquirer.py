"""Bounded acquisition of media bytes from the external downloader process."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Sequence

import structlog

from ..common.formatting import human_size
from .errors import ToolUnavailable, TransferFailed


LOGGER = structlog.get_logger("tubeproxy.acquirer")

WATCH_URL = "https://www.youtube.com/watch?v={identifier}"

SpawnProcess = Callable[..., Awaitable[asyncio.subprocess.Process]]


class Acquirer:
    """Runs the downloader once per call and collects its stdout up to a byte limit."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        chunk_size: int = 1024,
        shutdown_grace_seconds: float = 5.0,
        spawn: SpawnProcess = asyncio.create_subprocess_exec,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not command:
            raise ValueError("Downloader command must not be empty")
        self._command = list(command)
        self._chunk_size = max(1, chunk_size)
        self._grace = max(0.0, shutdown_grace_seconds)
        self._spawn = spawn
        self._clock = clock

    def build_command(self, identifier: str) -> list[str]:
        url = WATCH_URL.format(identifier=identifier)
        return [part.replace("{identifier}", identifier).replace("{url}", url) for part in self._command]

    async def fetch(self, identifier: str, limit: int) -> bytes:
        """Return the downloader's complete output for ``identifier``.

        A positive ``limit`` caps the number of bytes accepted; ``limit <= 0``
        reads until end of stream. Partial output is never returned.
        """
        argv = self.build_command(identifier)
        try:
            process = await self._spawn(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            LOGGER.error("downloader_unavailable", identifier=identifier, command=argv[0], error=str(exc))
            raise ToolUnavailable(identifier, f"Failed to start downloader {argv[0]!r}: {exc}") from exc

        started = self._clock()
        try:
            data = await self._read_bounded(identifier, process.stdout, limit)
            await process.wait()
        finally:
            await self._reap(identifier, process)

        if not data:
            raise TransferFailed(identifier, "Downloader produced no output")
        elapsed = self._clock() - started
        LOGGER.info(
            "fetch_completed",
            identifier=identifier,
            bytes=len(data),
            size=human_size(len(data)),
            seconds=round(elapsed, 3),
            exit_code=process.returncode,
        )
        return data

    async def _read_bounded(self, identifier: str, stream: asyncio.StreamReader, limit: int) -> bytes:
        buffer = bytearray()
        while True:
            try:
                chunk = await stream.read(self._chunk_size)
            except (OSError, ValueError) as exc:
                raise TransferFailed(
                    identifier, f"Download stream failed: {exc}", bytes_read=len(buffer)
                ) from exc
            if not chunk:
                if stream.at_eof():
                    break
                raise TransferFailed(identifier, "Empty read before end of stream", bytes_read=len(buffer))
            buffer.extend(chunk)
            if limit > 0 and len(buffer) > limit:
                raise TransferFailed(
                    identifier, f"Download exceeded limit of {limit} bytes", bytes_read=len(buffer)
                )
        return bytes(buffer)

    async def _reap(self, identifier: str, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self._grace)
            except asyncio.TimeoutError:
                LOGGER.warning("downloader_kill", identifier=identifier, pid=process.pid)
                process.kill()
                await process.wait()
        stream = process.stdout
        if stream is not None and not stream.at_eof():
            # Drain what the dead process left in the pipe so the transport can close.
            try:
                await asyncio.wait_for(stream.read(), timeout=self._grace)
            except (asyncio.TimeoutError, OSError, ValueError) as exc:
                LOGGER.debug("downloader_drain_failed", identifier=identifier, error=str(exc))
