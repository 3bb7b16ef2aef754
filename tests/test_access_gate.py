from __future__ import annotations

import ipaddress
from pathlib import Path

import pytest

from tubeproxy.proxy.access import AccessGate, AddressListSource, AddressSet, is_allowed, parse_address


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _gate(tmp_path: Path, clock: FakeClock, blacklist: str | None = None, whitelist: str | None = None) -> AccessGate:
    black = tmp_path / "blacklist.txt"
    white = tmp_path / "whitelist.txt"
    if blacklist is not None:
        black.write_text(blacklist, encoding="utf-8")
    if whitelist is not None:
        white.write_text(whitelist, encoding="utf-8")
    return AccessGate.from_paths(black, white, refresh_seconds=60, clock=clock)


def test_parse_address_accepts_only_bare_literals() -> None:
    assert parse_address(" 192.0.2.1 \n") == ipaddress.ip_address("192.0.2.1")
    assert parse_address("2001:db8::1") == ipaddress.ip_address("2001:db8::1")
    assert parse_address("::ffff:192.0.2.7") == ipaddress.ip_address("192.0.2.7")
    for bad in ["", "   ", "192.0.2.0/24", "fe80::1%eth0", "example.com", "256.1.1.1", "# comment"]:
        assert parse_address(bad) is None


def test_address_set_drops_malformed_lines() -> None:
    snapshot = AddressSet.from_lines(["10.0.0.1", "", "garbage", "::1", "10.0.0.1"], loaded_at=5.0)
    assert len(snapshot) == 2
    assert ipaddress.ip_address("::1") in snapshot
    assert snapshot.loaded_at == 5.0


def test_missing_files_leave_gate_open(tmp_path: Path) -> None:
    gate = _gate(tmp_path, FakeClock())
    assert gate.allow("203.0.113.9")
    assert gate.allow("2001:db8::5")


def test_blacklisted_address_absent_from_whitelist_is_denied(tmp_path: Path) -> None:
    gate = _gate(tmp_path, FakeClock(), blacklist="198.51.100.1\n", whitelist="198.51.100.2\n")
    assert not gate.allow("198.51.100.1")
    assert gate.allow("198.51.100.2")
    assert not gate.allow("198.51.100.3")


def test_blacklist_wins_over_whitelist(tmp_path: Path) -> None:
    gate = _gate(tmp_path, FakeClock(), blacklist="198.51.100.1\n", whitelist="198.51.100.1\n")
    assert not gate.allow("198.51.100.1")


def test_equivalent_ipv6_spellings_match(tmp_path: Path) -> None:
    gate = _gate(tmp_path, FakeClock(), blacklist="2001:db8:0:0:0:0:0:1\n")
    assert not gate.allow("2001:db8::1")


def test_ipv4_mapped_client_address_matches_ipv4_entry(tmp_path: Path) -> None:
    gate = _gate(tmp_path, FakeClock(), whitelist="192.0.2.10\n")
    assert gate.allow("::ffff:192.0.2.10")


def test_unparseable_source_only_passes_open_whitelist(tmp_path: Path) -> None:
    assert _gate(tmp_path, FakeClock()).allow("not-an-ip")
    assert not _gate(tmp_path, FakeClock(), whitelist="192.0.2.10\n").allow("not-an-ip")
    assert not _gate(tmp_path, FakeClock(), whitelist="192.0.2.10\n").allow(None)


def test_lists_refresh_after_interval(tmp_path: Path) -> None:
    clock = FakeClock()
    gate = _gate(tmp_path, clock, blacklist="")
    assert gate.allow("192.0.2.50")

    (tmp_path / "blacklist.txt").write_text("192.0.2.50\n", encoding="utf-8")
    clock.now += 30
    assert gate.allow("192.0.2.50"), "snapshot younger than the refresh interval is reused"

    clock.now += 31
    assert not gate.allow("192.0.2.50")


def test_removed_file_reloads_as_empty(tmp_path: Path) -> None:
    clock = FakeClock()
    gate = _gate(tmp_path, clock, blacklist="192.0.2.50\n")
    assert not gate.allow("192.0.2.50")

    (tmp_path / "blacklist.txt").unlink()
    clock.now += 61
    assert gate.allow("192.0.2.50")


def test_unreadable_file_keeps_previous_snapshot(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    clock = FakeClock()
    path = tmp_path / "blacklist.txt"
    path.write_text("192.0.2.77\n", encoding="utf-8")
    source = AddressListSource(path, refresh_seconds=60, clock=clock)
    first = source.current()
    assert ipaddress.ip_address("192.0.2.77") in first

    original_read_text = Path.read_text

    def failing_read_text(self, *args, **kwargs):
        if self == path:
            raise PermissionError("denied")
        return original_read_text(self, *args, **kwargs)

    monkeypatch.setattr(Path, "read_text", failing_read_text)
    clock.now += 61
    second = source.current()
    assert second is not first
    assert second.addresses == first.addresses
    assert second.loaded_at == clock.now


def test_unreadable_file_without_previous_snapshot_is_empty(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "whitelist.txt"
    path.write_text("192.0.2.77\n", encoding="utf-8")

    def failing_read_text(self, *args, **kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr(Path, "read_text", failing_read_text)
    source = AddressListSource(path, clock=FakeClock())
    assert source.current().is_empty()


def test_is_allowed_with_no_address() -> None:
    empty = AddressSet()
    assert is_allowed(None, empty, empty)
