"""Timestamp oracle values and the PD timestamp reset call."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass

_RESET_TS_URL = "/pd/api/v1/admin/reset-ts"
_RESET_TS_TIMEOUT = 30.0
_PHYSICAL_SHIFT_BITS = 18
_UINT64_MASK = (1 << 64) - 1


class ResetTSError(Exception):
    """Raised when PD refuses to reset its timestamp."""


@dataclass(frozen=True)
class Timestamp:
    """A physical unix timestamp in milliseconds and a logical counter."""

    physical: int
    logical: int


def decode_ts(ts: int) -> Timestamp:
    """Split a 64-bit timestamp into its physical and logical parts."""
    physical = ts >> _PHYSICAL_SHIFT_BITS
    logical = ts - (physical << _PHYSICAL_SHIFT_BITS)
    return Timestamp(physical=physical, logical=logical)


def encode_ts(tp: Timestamp) -> int:
    """Combine a timestamp into one unsigned 64-bit value."""
    return ((tp.physical << _PHYSICAL_SHIFT_BITS) + tp.logical) & _UINT64_MASK


def reset_ts(pd_addr: str, ts: int) -> int:
    """Ask PD at the given address to move its timestamp up to ts.

    Returns the HTTP status PD answered with (200, or 403 when PD already
    holds a larger timestamp).
    """
    body = json.dumps({"tso": str(ts)}, separators=(",", ":"))
    request = urllib.request.Request(
        "http://" + pd_addr + _RESET_TS_URL,
        data=body.encode(),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=_RESET_TS_TIMEOUT) as response:
            status = response.status
            text = response.read().decode(errors="replace")
    except urllib.error.HTTPError as exc:
        status = exc.code
        text = exc.read().decode(errors="replace")
    except urllib.error.URLError as exc:
        raise ResetTSError(f"pd resets TS failed: req={body}, err={exc.reason}") from exc
    if status not in (200, 403):
        raise ResetTSError(f"pd resets TS failed: req={body}, resp={text}")
    return status