"""Request pipeline: access gate, identifier, cache lookup, single-flight acquisition."""

from __future__ import annotations

import asyncio
import enum
import functools
from dataclasses import dataclass
from typing import Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, LabeledCounter
from .access import AccessGate
from .acquirer import Acquirer
from .errors import FetchError, TransferFailed
from .identifier import extract_identifier
from .store import ContentStore


LOGGER = structlog.get_logger("tubeproxy.coordinator")
TRACER = trace.get_tracer("tubeproxy.coordinator")

DENIED_COUNTER = GLOBAL_REGISTRY.register(Counter("tubeproxy_denied_total", "Requests rejected by the access gate"))
REJECTED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("tubeproxy_bad_identifier_total", "Requests without a valid identifier")
)
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("tubeproxy_cache_hits_total", "Cache hits"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("tubeproxy_cache_misses_total", "Cache misses"))
JOINED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("tubeproxy_fetch_joined_total", "Misses served by an acquisition already in flight")
)
ACQUISITION_COUNTER = GLOBAL_REGISTRY.register(
    Counter("tubeproxy_acquisitions_total", "Downloader runs started")
)
ACQUISITION_FAILURES = GLOBAL_REGISTRY.register(
    LabeledCounter("tubeproxy_acquisition_failures_total", "kind", "Failed acquisitions by failure kind")
)
BYTES_ACQUIRED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("tubeproxy_bytes_acquired_total", "Bytes downloaded and stored")
)
IN_FLIGHT_GAUGE = GLOBAL_REGISTRY.register(Gauge("tubeproxy_fetches_in_flight", "Acquisitions currently running"))


class FetchStatus(str, enum.Enum):
    DENIED = "denied"
    NOT_FOUND = "not_found"
    FOUND = "found"


@dataclass(frozen=True)
class FetchOutcome:
    status: FetchStatus
    identifier: Optional[str] = None
    payload: Optional[bytes] = None
    error: Optional[FetchError] = None


@dataclass
class InFlightFetch:
    """A running acquisition plus the number of requests waiting on it."""

    identifier: str
    task: "asyncio.Task[bytes]"
    waiters: int = 0
    abandoned: bool = False


class FetchCoordinator:
    """The only component allowed to start acquisitions; at most one per identifier at a time."""

    def __init__(
        self,
        gate: AccessGate,
        store: ContentStore,
        acquirer: Acquirer,
        *,
        download_limit: int,
    ) -> None:
        self._gate = gate
        self._store = store
        self._acquirer = acquirer
        self._limit = download_limit
        self._in_flight: dict[str, InFlightFetch] = {}
        IN_FLIGHT_GAUGE.set_supplier(lambda: float(len(self._in_flight)))

    def is_in_flight(self, identifier: str) -> bool:
        return identifier in self._in_flight

    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    async def get(self, source_address: str | None, method: str, target: str) -> FetchOutcome:
        if not self._gate.allow(source_address):
            DENIED_COUNTER.inc()
            LOGGER.info("access_denied", source=source_address)
            return FetchOutcome(FetchStatus.DENIED)

        identifier = extract_identifier(method, target)
        if identifier is None:
            REJECTED_COUNTER.inc()
            LOGGER.info("identifier_rejected", source=source_address, method=method)
            return FetchOutcome(FetchStatus.NOT_FOUND)

        LOGGER.info("media_request", source=source_address, identifier=identifier)
        cached = await self._store.lookup(identifier)
        if cached is not None:
            HIT_COUNTER.inc()
            LOGGER.info("cache_hit", identifier=identifier, bytes=len(cached))
            return FetchOutcome(FetchStatus.FOUND, identifier, cached)

        MISS_COUNTER.inc()
        try:
            payload = await self._join(identifier)
        except FetchError as exc:
            return FetchOutcome(FetchStatus.NOT_FOUND, identifier, error=exc)
        return FetchOutcome(FetchStatus.FOUND, identifier, payload)

    async def _join(self, identifier: str) -> bytes:
        entry = self._in_flight.get(identifier)
        while entry is not None and entry.abandoned and not entry.task.done():
            # The previous run is still reaping its process; start over once it is gone.
            await asyncio.wait({entry.task})
            entry = self._in_flight.get(identifier)

        # No await between the membership test and the insert, so registration
        # is atomic with respect to other requests on this loop.
        if entry is None or entry.task.done():
            task = asyncio.create_task(self._acquire(identifier), name=f"acquire:{identifier}")
            entry = InFlightFetch(identifier=identifier, task=task)
            self._in_flight[identifier] = entry
            task.add_done_callback(functools.partial(self._deregister, identifier))
        else:
            JOINED_COUNTER.inc()
            LOGGER.info("fetch_joined", identifier=identifier, waiters=entry.waiters + 1)

        entry.waiters += 1
        try:
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if entry.task.cancelled() and (current is None or current.cancelling() == 0):
                # The acquisition was cancelled underneath a waiter that is still here.
                raise TransferFailed(identifier, "Acquisition was cancelled") from None
            raise
        finally:
            entry.waiters -= 1
            if entry.waiters == 0 and not entry.task.done() and not entry.abandoned:
                # Every requester went away; stop the downloader instead of finishing unobserved.
                LOGGER.info("fetch_abandoned", identifier=identifier)
                entry.abandoned = True
                entry.task.cancel()

    async def _acquire(self, identifier: str) -> bytes:
        try:
            cached = await self._store.lookup(identifier)
            if cached is not None:
                return cached
            ACQUISITION_COUNTER.inc()
            LOGGER.info("fetch_started", identifier=identifier, limit=self._limit)
            with TRACER.start_as_current_span("proxy.acquire", attributes={"tubeproxy.identifier": identifier}) as span:
                data = await self._acquirer.fetch(identifier, self._limit)
                await self._store.put(identifier, data)
                span.set_attribute("tubeproxy.bytes", len(data))
            BYTES_ACQUIRED_COUNTER.inc(len(data))
            return data
        except FetchError as exc:
            ACQUISITION_FAILURES.inc(exc.kind)
            LOGGER.warning("fetch_failed", identifier=identifier, kind=exc.kind, error=str(exc))
            raise
        finally:
            self._deregister(identifier, asyncio.current_task())

    def _deregister(self, identifier: str, task: Optional[asyncio.Task]) -> None:
        # Runs from the task body and again as its done callback, which also
        # covers a task cancelled before it ever started.
        entry = self._in_flight.get(identifier)
        if entry is not None and entry.task is task:
            del self._in_flight[identifier]
