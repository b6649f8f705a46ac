"""Key rewriting, SST metadata and retry helpers used by restore."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, TypeVar

from .schema import (
    RECORD_PREFIX_SEP,
    BackupFile,
    TableInfo,
    encode_bytes,
    encode_table_index_prefix,
    encode_table_prefix,
)

log = logging.getLogger(__name__)

_ENCODED_GROUP_WITH_MARKER = 9
_TS_SUFFIX_LEN = 8

T = TypeVar("T")


@dataclass(frozen=True)
class RewriteRule:
    """Replace old_key_prefix with new_key_prefix."""

    old_key_prefix: bytes
    new_key_prefix: bytes


@dataclass
class RewriteRules:
    """Rules for table prefixes and for data (record and index) prefixes."""

    table: list[RewriteRule] = field(default_factory=list)
    data: list[RewriteRule] = field(default_factory=list)


@dataclass(frozen=True)
class KeyRange:
    """A key range [start_key, end_key)."""

    start_key: bytes = b""
    end_key: bytes = b""


@dataclass(frozen=True)
class Peer:
    """A replica of a region on a store."""

    id: int = 0
    store_id: int = 0


@dataclass
class Region:
    """A region of the key space and its replicas."""

    id: int = 0
    start_key: bytes = b""
    end_key: bytes = b""
    peers: list[Peer] = field(default_factory=list)
    region_epoch: Any = None


@dataclass
class SSTMeta:
    """What a store needs to download and ingest one SST file."""

    uuid: bytes
    cf_name: str
    range: KeyRange
    region_id: int = 0
    region_epoch: Any = None


def get_rewrite_rules(new_table: TableInfo, old_table: TableInfo) -> RewriteRules:
    """Return the rules rewriting keys of old_table into keys of new_table."""
    table_rules = [RewriteRule(
        old_key_prefix=encode_table_prefix(old_table.id),
        new_key_prefix=encode_table_prefix(new_table.id),
    )]
    data_rules = [RewriteRule(
        old_key_prefix=encode_table_prefix(old_table.id) + RECORD_PREFIX_SEP,
        new_key_prefix=encode_table_prefix(new_table.id) + RECORD_PREFIX_SEP,
    )]
    for src in old_table.indices:
        for dest in new_table.indices:
            if src.name == dest.name:
                data_rules.append(RewriteRule(
                    old_key_prefix=encode_table_index_prefix(old_table.id, src.id),
                    new_key_prefix=encode_table_index_prefix(new_table.id, dest.id),
                ))
    return RewriteRules(table=table_rules, data=data_rules)


def get_sst_meta_from_file(
    uuid: bytes, file: BackupFile, region: Region, rule: RewriteRule
) -> SSTMeta:
    """Return SST metadata covering the overlap of the rule's new prefix and the region."""
    if "default" in file.name:
        cf_name = "default"
    elif "write" in file.name:
        cf_name = "write"
    else:
        cf_name = ""
    range_start = max(rule.new_key_prefix, region.start_key)
    range_end = rule.new_key_prefix + b"\xff"
    if region.end_key and range_end > region.end_key:
        range_end = region.end_key
    return SSTMeta(uuid=uuid, cf_name=cf_name, range=KeyRange(range_start, range_end))


def with_retry(
    fn: Callable[[], T],
    should_continue: Callable[[Exception], bool],
    attempts: int,
    delay: float,
    max_delay: float,
) -> T | None:
    """Call fn up to attempts times with doubling, capped delays (seconds).

    Stops early when should_continue returns False and raises the last error.
    """
    last_error: Exception | None = None
    for attempt in range(attempts):
        try:
            return fn()
        except Exception as exc:
            last_error = exc
            if not should_continue(exc) or attempt == attempts - 1:
                break
            delay = min(2 * delay, max_delay)
            time.sleep(delay)
    if last_error is not None:
        raise last_error
    return None


def get_ranges(files: Iterable[BackupFile]) -> list[KeyRange]:
    """Return the key ranges of the write-CF files, each file once."""
    ranges = []
    seen: set[str] = set()
    for file in files:
        # Default CF files are skipped: their ranges overlap the write CF ones.
        if file.name not in seen and "write" in file.name:
            ranges.append(KeyRange(file.start_key, file.end_key))
            seen.add(file.name)
    return ranges


def find_region_rewrite_rule(region: Region, rules: RewriteRules) -> RewriteRule | None:
    """Return the data rule whose new prefix starts the region, or None."""
    return next(
        (rule for rule in rules.data if region.start_key.startswith(rule.new_key_prefix)),
        None,
    )


def encode_key_prefix(key: bytes) -> bytes:
    """Encode a raw key prefix so it is a prefix of every encoded key it starts."""
    ungrouped = len(key) % 8
    grouped = key[:len(key) - ungrouped]
    encoded = encode_bytes(grouped)
    return encoded[:-_ENCODED_GROUP_WITH_MARKER] + key[len(key) - ungrouped:]


def _encode_rule(rule: RewriteRule) -> RewriteRule:
    return RewriteRule(
        old_key_prefix=encode_key_prefix(rule.old_key_prefix),
        new_key_prefix=encode_key_prefix(rule.new_key_prefix),
    )


def encode_rewrite_rules(rules: RewriteRules) -> RewriteRules:
    """Return the rules with every prefix encoded."""
    return RewriteRules(
        table=[_encode_rule(rule) for rule in rules.table],
        data=[_encode_rule(rule) for rule in rules.data],
    )


def rewrite_raw_key_with_new_prefix(key: bytes, rules: RewriteRules) -> bytes | None:
    """Encode a raw key and rewrite it with the first matching encoded rule.

    Return None if the key is empty or no rule matches.
    """
    if not key:
        return None
    encoded = encode_bytes(key)
    for rule in (*rules.data, *rules.table):
        if encoded.startswith(rule.old_key_prefix):
            return rule.new_key_prefix + encoded[len(rule.old_key_prefix):]
    return None


def truncate_ts(key: bytes) -> bytes:
    """Drop the 8-byte timestamp suffix of a key."""
    if len(key) < _TS_SUFFIX_LEN:
        raise ValueError("key is shorter than a timestamp")
    return key[:len(key) - _TS_SUFFIX_LEN]


def split_ranges(
    splitter: Any,
    ranges: list[KeyRange],
    rules: RewriteRules,
    update: Callable[[], object] | None = None,
) -> None:
    """Split regions along the rewritten ranges, reporting each split range."""
    started = time.monotonic()

    def on_split(_rg: KeyRange) -> None:
        if update is not None:
            update()

    try:
        splitter.split(ranges, rules, on_split)
    finally:
        log.info("SplitRegion costs=%.3fs", time.monotonic() - started)