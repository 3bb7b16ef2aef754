"""IP allow/deny lists gating access to the proxy."""

from __future__ import annotations

import ipaddress
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

import structlog


LOGGER = structlog.get_logger("tubeproxy.access")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_address(value: str) -> Optional[IPAddress]:
    """Parse a bare IPv4/IPv6 literal; anything else (CIDR, zone ids, hostnames) yields None."""

    candidate = value.strip()
    if not candidate or "%" in candidate or "/" in candidate:
        return None
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


@dataclass(frozen=True)
class AddressSet:
    """Immutable snapshot of the validated addresses of one list file."""

    addresses: frozenset = field(default_factory=frozenset)
    loaded_at: float = 0.0

    @classmethod
    def from_lines(cls, lines: Iterable[str], loaded_at: float) -> "AddressSet":
        parsed = (parse_address(line) for line in lines)
        return cls(frozenset(address for address in parsed if address is not None), loaded_at)

    def __contains__(self, address: object) -> bool:
        return address in self.addresses

    def __len__(self) -> int:
        return len(self.addresses)

    def is_empty(self) -> bool:
        return not self.addresses


def is_allowed(address: Optional[IPAddress], blacklist: AddressSet, whitelist: AddressSet) -> bool:
    """Blacklist always wins; an empty whitelist admits everyone else."""

    blacklisted = address is not None and address in blacklist
    whitelisted = whitelist.is_empty() or (address is not None and address in whitelist)
    return whitelisted and not blacklisted


class AddressListSource:
    """A line-oriented address list file re-read once its snapshot is older than the refresh interval."""

    def __init__(
        self,
        path: Path,
        *,
        refresh_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._path = Path(path)
        self._refresh_seconds = refresh_seconds
        self._clock = clock
        self._snapshot: Optional[AddressSet] = None
        self._reload_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def current(self) -> AddressSet:
        snapshot = self._snapshot
        if snapshot is not None and self._clock() - snapshot.loaded_at <= self._refresh_seconds:
            return snapshot
        with self._reload_lock:
            snapshot = self._snapshot
            now = self._clock()
            if snapshot is None or now - snapshot.loaded_at > self._refresh_seconds:
                snapshot = self._load(previous=snapshot, now=now)
                self._snapshot = snapshot
        return snapshot

    def _load(self, *, previous: Optional[AddressSet], now: float) -> AddressSet:
        try:
            text = self._path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return AddressSet(frozenset(), now)
        except OSError as exc:
            LOGGER.warning("access_list_load_failed", path=str(self._path), error=str(exc))
            kept = previous.addresses if previous is not None else frozenset()
            return AddressSet(kept, now)
        snapshot = AddressSet.from_lines(text.splitlines(), now)
        LOGGER.debug("access_list_loaded", path=str(self._path), entries=len(snapshot))
        return snapshot


class AccessGate:
    """Decides whether a client address may use the proxy."""

    def __init__(self, blacklist: AddressListSource, whitelist: AddressListSource) -> None:
        self._blacklist = blacklist
        self._whitelist = whitelist

    @classmethod
    def from_paths(
        cls,
        blacklist_path: Path,
        whitelist_path: Path,
        *,
        refresh_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> "AccessGate":
        return cls(
            AddressListSource(blacklist_path, refresh_seconds=refresh_seconds, clock=clock),
            AddressListSource(whitelist_path, refresh_seconds=refresh_seconds, clock=clock),
        )

    def allow(self, source_address: str | None) -> bool:
        address = parse_address(source_address) if source_address else None
        return is_allowed(address, self._blacklist.current(), self._whitelist.current())
