"""Sorted, non-overlapping key ranges recording what a backup has covered."""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from typing import Iterator

from .schema import BackupFile

log = logging.getLogger(__name__)


@dataclass(eq=False)
class Range:
    """A key range [start_key, end_key); an empty end key means unbounded."""

    start_key: bytes = b""
    end_key: bytes = b""
    files: list[BackupFile] = field(default_factory=list)
    error: object | None = None

    def intersect(self, start: bytes, end: bytes) -> tuple[bytes, bytes] | None:
        """Return the part of [start, end) inside this range, or None."""
        if self.end_key and start >= self.end_key:
            return None
        if end and end <= self.start_key:
            return None
        sub_start = start if start >= self.start_key else self.start_key
        if not end:
            sub_end = self.end_key
        elif not self.end_key:
            sub_end = end
        elif end < self.end_key:
            sub_end = end
        else:
            sub_end = self.end_key
        return sub_start, sub_end

    def contains(self, key: bytes) -> bool:
        """Return True if key lies in [start_key, end_key)."""
        return key >= self.start_key and (not self.end_key or key < self.end_key)


class RangeTree:
    """Ranges ordered by start key, with overlapping ranges replaced on update."""

    def __init__(self) -> None:
        self._starts: list[bytes] = []
        self._ranges: list[Range] = []

    def __len__(self) -> int:
        return len(self._ranges)

    def __iter__(self) -> Iterator[Range]:
        return iter(list(self._ranges))

    def get(self, start_key: bytes) -> Range | None:
        """Return the range starting exactly at start_key, or None."""
        idx = bisect.bisect_left(self._starts, start_key)
        if idx < len(self._starts) and self._starts[idx] == start_key:
            return self._ranges[idx]
        return None

    def find(self, rg: Range) -> Range | None:
        """Return the range that contains the start key of rg, or None."""
        idx = bisect.bisect_right(self._starts, rg.start_key) - 1
        if idx < 0:
            return None
        found = self._ranges[idx]
        return found if found.contains(rg.start_key) else None

    def _from(self, start_key: bytes) -> list[Range]:
        return self._ranges[bisect.bisect_left(self._starts, start_key):]

    def get_overlaps(self, rg: Range) -> list[Range]:
        """Return the ranges overlapping rg, in key order."""
        found = self.find(rg) or rg
        overlaps = []
        for over in self._from(found.start_key):
            if rg.end_key and rg.end_key <= over.start_key:
                break
            overlaps.append(over)
        return overlaps

    def _delete(self, rg: Range) -> None:
        idx = bisect.bisect_left(self._starts, rg.start_key)
        if idx < len(self._starts) and self._starts[idx] == rg.start_key:
            del self._starts[idx]
            del self._ranges[idx]

    def _replace_or_insert(self, rg: Range) -> None:
        idx = bisect.bisect_left(self._starts, rg.start_key)
        if idx < len(self._starts) and self._starts[idx] == rg.start_key:
            self._ranges[idx] = rg
        else:
            self._starts.insert(idx, rg.start_key)
            self._ranges.insert(idx, rg)

    def update(self, rg: Range) -> None:
        """Insert rg, dropping every range it overlaps."""
        for item in self.get_overlaps(rg):
            log.info("delete overlapping range, start=%r end=%r", item.start_key, item.end_key)
            self._delete(item)
        self._replace_or_insert(rg)

    def put(self, start_key: bytes, end_key: bytes, files: list[BackupFile]) -> None:
        """Record a backed-up range and its files."""
        self.update(Range(start_key=start_key, end_key=end_key, files=list(files)))

    def get_incomplete_range(self, start_key: bytes, end_key: bytes) -> list[Range]:
        """Return the gaps in [start_key, end_key) not covered by any range."""
        if start_key and start_key == end_key:
            return []
        incomplete: list[Range] = []
        request = Range(start_key=start_key, end_key=end_key)
        last_end = start_key
        pivot = start_key
        first = self.find(Range(start_key=start_key))
        if first is not None:
            pivot = first.start_key
        for rg in self._from(pivot):
            if last_end < rg.start_key:
                part = request.intersect(last_end, rg.start_key)
                if part is not None:
                    incomplete.append(Range(start_key=part[0], end_key=part[1]))
            last_end = rg.end_key
            if end_key and not rg.end_key < end_key:
                break
        if last_end != end_key and last_end and (not end_key or last_end < end_key):
            part = request.intersect(last_end, end_key)
            if part is not None:
                incomplete.append(Range(start_key=part[0], end_key=part[1]))
        return incomplete

    def check_dup_files(self) -> list[str]:
        """Log and return the names of files that appear more than once."""
        seen: dict[str, bytes] = {}
        duplicates = []
        for rg in self._ranges:
            for file in rg.files:
                if file.name in seen:
                    log.error(
                        "dup file name=%s sha256_1=%s sha256_2=%s",
                        file.name, seen[file.name].hex(), file.sha256.hex(),
                    )
                    duplicates.append(file.name)
                else:
                    seen[file.name] = file.sha256
        return duplicates