"""Checksum requests over the rows and indices of a table."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from .schema import (
    RECORD_PREFIX_SEP,
    STATE_PUBLIC,
    IndexInfo,
    Table,
    TableInfo,
    encode_int,
    encode_row_key,
    encode_table_index_prefix,
    encode_table_prefix,
    prefix_next,
)

log = logging.getLogger(__name__)

ALGORITHM_CRC64_XOR = "crc64_xor"
PRIORITY_LOW = "low"
DEFAULT_SCAN_CONCURRENCY = 15

_UINT64_MASK = (1 << 64) - 1
_MIN_INT64 = -(1 << 63)
_MAX_INT64 = (1 << 63) - 1
# Encoded datum flags bounding a full index scan: NULL and the maximum value.
_NIL_FLAG = b"\x00"
_MAX_FLAG = b"\xfa"


class ScanOn(enum.Enum):
    """What a checksum request scans."""

    TABLE = "table"
    INDEX = "index"


@dataclass(frozen=True)
class ChecksumRewriteRule:
    """Key prefixes to rewrite before checksumming."""

    old_prefix: bytes
    new_prefix: bytes


@dataclass(frozen=True)
class ChecksumRequest:
    """A checksum over the key ranges of a table's records or of one index."""

    table_id: int
    start_ts: int
    scan_on: ScanOn
    ranges: tuple[tuple[bytes, bytes], ...]
    rule: ChecksumRewriteRule | None = None
    index_id: int | None = None
    algorithm: str = ALGORITHM_CRC64_XOR
    priority: str = PRIORITY_LOW
    concurrency: int = DEFAULT_SCAN_CONCURRENCY


@dataclass
class ChecksumResponse:
    """A CRC64-XOR checksum with key and byte counts."""

    checksum: int = 0
    total_kvs: int = 0
    total_bytes: int = 0

    def update(self, other: ChecksumResponse) -> None:
        """Fold another response into this one."""
        self.checksum ^= other.checksum
        self.total_kvs = (self.total_kvs + other.total_kvs) & _UINT64_MASK
        self.total_bytes = (self.total_bytes + other.total_bytes) & _UINT64_MASK


class ChecksumClient(Protocol):
    """Sends a checksum request and yields partial responses."""

    def checksum(self, request: ChecksumRequest) -> Iterable[ChecksumResponse]: ...


def _record_prefix(table_id: int) -> bytes:
    return encode_table_prefix(table_id) + RECORD_PREFIX_SEP


def _table_request(table_id: int, old_table: Table | None, start_ts: int) -> ChecksumRequest:
    rule = None
    if old_table is not None:
        rule = ChecksumRewriteRule(
            old_prefix=_record_prefix(old_table.schema.id),
            new_prefix=_record_prefix(table_id),
        )
    low = encode_row_key(table_id, encode_int(_MIN_INT64))
    high = encode_row_key(table_id, prefix_next(encode_int(_MAX_INT64)))
    return ChecksumRequest(
        table_id=table_id,
        start_ts=start_ts,
        scan_on=ScanOn.TABLE,
        ranges=((low, high),),
        rule=rule,
    )


def _index_request(
    table_id: int,
    index: IndexInfo,
    old_table_id: int,
    old_index: IndexInfo | None,
    start_ts: int,
) -> ChecksumRequest:
    rule = None
    if old_index is not None:
        rule = ChecksumRewriteRule(
            old_prefix=encode_table_index_prefix(old_table_id, old_index.id),
            new_prefix=encode_table_index_prefix(table_id, index.id),
        )
    prefix = encode_table_index_prefix(table_id, index.id)
    return ChecksumRequest(
        table_id=table_id,
        start_ts=start_ts,
        scan_on=ScanOn.INDEX,
        ranges=((prefix + _NIL_FLAG, prefix + prefix_next(_MAX_FLAG)),),
        rule=rule,
        index_id=index.id,
    )


def _requests_for(
    table: TableInfo, table_id: int, old_table: Table | None, start_ts: int
) -> list[ChecksumRequest]:
    requests = [_table_request(table_id, old_table, start_ts)]
    for index in table.indices:
        if index.state != STATE_PUBLIC:
            continue
        old_index = None
        old_table_id = 0
        if old_table is not None:
            old_index = next(
                (old for old in old_table.schema.indices if old.name == index.name), None
            )
            if old_index is None:
                raise LookupError(
                    f"index not found: {index.name} in table {old_table.schema.name}"
                )
            old_table_id = old_table.schema.id
        requests.append(_index_request(table_id, index, old_table_id, old_index, start_ts))
    return requests


def build_checksum_requests(
    new_table: TableInfo, old_table: Table | None, start_ts: int
) -> list[ChecksumRequest]:
    """Build the requests covering a table, its partitions and public indices."""
    requests = _requests_for(new_table, new_table.id, old_table, start_ts)
    for partition_id in new_table.partition or ():
        requests.extend(_requests_for(new_table, partition_id, old_table, start_ts))
    return requests


class Executor:
    """Runs a list of checksum requests and folds the results."""

    def __init__(self, requests: list[ChecksumRequest]) -> None:
        self.requests = list(requests)

    def __len__(self) -> int:
        return len(self.requests)

    def execute(
        self,
        client: ChecksumClient,
        update_fn: Callable[[], object] | None = None,
    ) -> ChecksumResponse:
        """Send every request and return the combined checksum."""
        total = ChecksumResponse()
        for request in self.requests:
            response = ChecksumResponse()
            for partial in client.checksum(request):
                response.update(partial)
            total.update(response)
            if update_fn is not None:
                update_fn()
        return total


class ExecutorBuilder:
    """Collects what a checksum executor needs and builds it."""

    def __init__(self, table: TableInfo, ts: int) -> None:
        self.table = table
        self.ts = ts
        self.old_table: Table | None = None

    def set_old_table(self, old_table: Table) -> ExecutorBuilder:
        """Rewrite the given table's key prefixes to this table's when checksumming."""
        self.old_table = old_table
        return self

    def build(self) -> Executor:
        """Build the executor."""
        return Executor(build_checksum_requests(self.table, self.old_table, self.ts))