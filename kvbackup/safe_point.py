"""GC safe point lookups against PD."""

from __future__ import annotations

from typing import Protocol

from .tso import Timestamp, decode_ts, encode_ts


class GCSafePointError(Exception):
    """Raised when a timestamp is not newer than the GC safe point."""


class _SafePointClient(Protocol):
    def update_gc_safe_point(self, safe_point: int) -> int: ...


def get_gc_safe_point(pd_client: _SafePointClient) -> Timestamp:
    """Return the current GC safe point."""
    return decode_ts(pd_client.update_gc_safe_point(0))


def check_gc_safepoint(pd_client: _SafePointClient, ts: int) -> None:
    """Raise GCSafePointError if ts is not newer than the GC safe point."""
    safe_point_ts = encode_ts(get_gc_safe_point(pd_client))
    if ts <= safe_point_ts:
        raise GCSafePointError(f"GC safepoint {safe_point_ts} exceed TS {ts}")