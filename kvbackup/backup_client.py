"""Back up a cluster: pick timestamps and key ranges, push the backup down, save the meta."""

from __future__ import annotations

import logging
import queue
import re
import threading
import time
from fractions import Fraction
from typing import Any, Callable, Iterable, Protocol

from .backup_schema import Schemas
from .conn import StoreState
from .fine_grained import fine_grained_backup
from .push import BackupRequest, PushDown
from .restore_util import KeyRange
from .safe_point import GCSafePointError, check_gc_safepoint, get_gc_safe_point
from .schema import (
    META_FILE,
    STATE_PUBLIC,
    BackupMeta,
    BackupSchema,
    DBInfo,
    TableInfo,
    encode_int,
    encode_row_key,
    encode_table_index_prefix,
    load_backup_tables,
    prefix_next,
)
from .storage import create, format_backend_url
from .tso import Timestamp, encode_ts

log = logging.getLogger(__name__)

SYSTEM_DATABASES = ("information_schema", "performance_schema", "mysql")
GC_SAFEPOINT_CHECK_INTERVAL = 30.0

_UINT64_MASK = (1 << 64) - 1
_MIN_INT64 = -(1 << 63)
_MAX_INT64 = (1 << 63) - 1
_NIL_FLAG = b"\x00"
_MAX_FLAG = b"\xfa"
_NS_PER_MS = 1_000_000

_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_NUMBER = re.compile(r"(\d*)(?:\.(\d*))?")
_UNIT = re.compile(r"[^\d.]+")

_DONE = object()


def parse_duration(text: str) -> int:
    """Parse a duration such as "1.5m" or "-1h30m" into nanoseconds."""
    invalid = ValueError(f"time: invalid duration {text}")
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return 0
    if not rest:
        raise invalid
    total = Fraction(0)
    while rest:
        number = _NUMBER.match(rest)
        whole, frac = number.group(1), number.group(2)
        if not whole and not frac:
            raise invalid
        rest = rest[number.end():]
        unit_match = _UNIT.match(rest)
        if unit_match is None:
            raise ValueError(f"time: missing unit in duration {text}")
        unit = unit_match.group()
        rest = rest[unit_match.end():]
        if unit not in _DURATION_UNITS:
            raise ValueError(f"time: unknown unit {unit} in duration {text}")
        value = Fraction(int(whole or "0"))
        if frac:
            value += Fraction(int(frac), 10 ** len(frac))
        total += value * _DURATION_UNITS[unit]
    nanoseconds = int(total)
    if nanoseconds > _MAX_INT64:
        raise invalid
    return -nanoseconds if negative else nanoseconds


def _append_ranges(table: TableInfo, table_id: int) -> list[KeyRange]:
    ranges = [KeyRange(
        start_key=encode_row_key(table_id, encode_int(_MIN_INT64)),
        end_key=encode_row_key(table_id, prefix_next(encode_int(_MAX_INT64))),
    )]
    for index in table.indices:
        if index.state != STATE_PUBLIC:
            continue
        prefix = encode_table_index_prefix(table_id, index.id)
        ranges.append(KeyRange(
            start_key=prefix + _NIL_FLAG,
            end_key=prefix + prefix_next(_MAX_FLAG),
        ))
    return ranges


def build_table_ranges(table: TableInfo) -> list[KeyRange]:
    """Return the key ranges holding a table's rows and public indices."""
    if table.partition is None:
        return _append_ranges(table, table.id)
    ranges: list[KeyRange] = []
    for partition_id in table.partition:
        ranges.extend(_append_ranges(table, partition_id))
    return ranges


class InfoSchema(Protocol):
    """The schemas of the cluster at the backup timestamp."""

    def schema_by_name(self, name: str) -> DBInfo | None: ...

    def all_schemas(self) -> Iterable[DBInfo]: ...


class AutoIDAllocator(Protocol):
    """Hands out the next global auto increment id of a table."""

    def next_global_auto_id(self, db_id: int, table_id: int) -> int: ...


def build_backup_range_and_schema(
    info_schema: InfoSchema,
    id_allocator: AutoIDAllocator,
    db_name: str,
    table_name: str,
) -> tuple[list[KeyRange], Schemas]:
    """Return the key ranges and pending schemas of the tables to back up.

    Both names empty means a full backup; both set means one table.
    """
    if not db_name and table_name:
        raise ValueError("no database is not specified")
    if db_name and not table_name:
        raise ValueError("backup database is not supported")
    wanted_table = table_name.lower()
    if db_name:
        db_info = info_schema.schema_by_name(db_name)
        if db_info is None:
            raise LookupError(f"schema {db_name} not found")
        db_infos = [db_info]
    else:
        db_infos = list(info_schema.all_schemas())

    ranges: list[KeyRange] = []
    schemas = Schemas()
    for db_info in db_infos:
        if db_info.name.lower() in SYSTEM_DATABASES:
            continue
        db_data = db_info.to_json()
        for table_info in db_info.tables:
            if wanted_table and wanted_table != table_info.name.lower():
                continue
            global_auto_id = id_allocator.next_global_auto_id(db_info.id, table_info.id)
            table_info.auto_inc_id = global_auto_id
            log.info(
                "change table AutoIncID, db=%s table=%s AutoIncID=%d",
                db_info.name, table_info.name, global_auto_id,
            )
            schemas.push_pending(
                BackupSchema(db=db_data, table=table_info.to_json()),
                db_info.name.lower(),
                table_info.name.lower(),
            )
            ranges.extend(build_table_ranges(table_info))

    if wanted_table and len(schemas) == 0:
        raise LookupError(f"table {table_name} not found")
    return ranges, schemas


def _checked_sum(values: Iterable[int]) -> int:
    total = 0
    for value in values:
        total = (total + value) & _UINT64_MASK
    return total


class BackupClient:
    """Instructs the stores of a cluster how to make a backup."""

    def __init__(self, mgr: Any) -> None:
        log.info("new backup client")
        self.mgr = mgr
        self.cluster_id = mgr.pd_client.get_cluster_id()
        self.backup_meta = BackupMeta()
        self.storage: Any = None
        self.backend: Any = None

    def get_ts(self, time_ago: str = "") -> int:
        """Return the backup timestamp, optionally moved back by a duration."""
        pd_client = self.mgr.pd_client
        physical, logical = pd_client.get_ts()
        if time_ago:
            nanoseconds = parse_duration(time_ago)
            sign = -1 if nanoseconds < 0 else 1
            ago_ms = sign * (abs(nanoseconds) // _NS_PER_MS)
            log.info("backup time ago, MillisecondsAgo=%d", ago_ms)
            safe_point = get_gc_safe_point(pd_client)
            if physical - ago_ms < safe_point.physical:
                raise GCSafePointError("given backup time exceed GCSafePoint")
            physical -= ago_ms
        backup_ts = encode_ts(Timestamp(physical=physical, logical=logical))
        log.info("backup encode timestamp, BackupTS=%d", backup_ts)
        return backup_ts

    def set_storage(self, backend: Any) -> None:
        """Use the storage of backend; refuse one that already holds a backup."""
        self.storage = create(backend)
        if self.storage.file_exists(META_FILE):
            raise FileExistsError(
                "backup meta exists, may be some backup files in the path already"
            )
        self.backend = backend

    def save_backup_meta(self) -> None:
        """Write the backup meta to the storage."""
        data = self.backup_meta.to_bytes()
        log.debug("backup meta: %s", self.backup_meta)
        if self.backend is not None:
            log.info("save backup meta, path=%s", format_backend_url(self.backend))
        self.storage.write(META_FILE, data)

    def backup_ranges(
        self,
        ranges: Iterable[Any],
        backup_ts: int,
        rate: int,
        concurrency: int,
        update: Callable[[], object] | None = None,
    ) -> None:
        """Back up each key range, checking the GC safe point as it goes."""
        started = time.monotonic()
        ranges = list(ranges)
        events: queue.Queue[object] = queue.Queue()

        def run() -> None:
            try:
                for rg in ranges:
                    self._backup_range(
                        rg.start_key, rg.end_key, backup_ts, rate, concurrency, update
                    )
            except Exception as exc:
                events.put(exc)
                return
            events.put(_DONE)

        threading.Thread(target=run, name="backup-ranges", daemon=True).start()
        try:
            finished = False
            while True:
                error: Exception | None = None
                try:
                    check_gc_safepoint(self.mgr.pd_client, backup_ts)
                except Exception as exc:
                    # Checked again on the next round.
                    log.warning("get GC safepoint failed: %s", exc)
                    error = exc
                if finished:
                    if error is not None:
                        raise error
                    return
                try:
                    item = events.get(timeout=GC_SAFEPOINT_CHECK_INTERVAL)
                except queue.Empty:
                    continue
                if item is _DONE:
                    finished = True
                elif isinstance(item, BaseException):
                    raise item
        finally:
            log.info("Backup Ranges take=%.3fs", time.monotonic() - started)

    def _backup_range(
        self,
        start_key: bytes,
        end_key: bytes,
        backup_ts: int,
        rate_mbs: int,
        concurrency: int,
        update: Callable[[], object] | None,
    ) -> None:
        # The protocol's rate limit is in bytes per second.
        rate_limit = rate_mbs * 1024 * 1024
        log.info(
            "backup started, start=%r end=%r RateLimit=%d Concurrency=%d",
            start_key, end_key, rate_mbs, concurrency,
        )
        started = time.monotonic()
        stores = [
            store for store in self.mgr.pd_client.get_all_stores()
            if store.state != StoreState.TOMBSTONE
        ]
        request = BackupRequest(
            cluster_id=self.cluster_id,
            start_key=start_key,
            end_key=end_key,
            start_version=backup_ts,
            end_version=backup_ts,
            storage_backend=self.backend,
            rate_limit=rate_limit,
            concurrency=concurrency,
        )
        results = PushDown(self.mgr).push_backup(request, stores, update)
        log.info("finish backup push down, Ok=%d", len(results))

        fine_grained_backup(self.mgr, request, results, update)

        self.backup_meta.start_version = backup_ts
        self.backup_meta.end_version = backup_ts
        log.info("backup time range, StartVersion=%d EndVersion=%d", backup_ts, backup_ts)
        for rg in results:
            self.backup_meta.files.extend(rg.files)
        results.check_dup_files()
        log.info("backup range finished take=%.3fs", time.monotonic() - started)

    def get_range_region_count(self, start_key: bytes, end_key: bytes) -> int:
        """Return the region count of the cluster."""
        return self.mgr.get_region_count()

    def fast_checksum(self) -> bool:
        """Check each table's checksum against the XOR of its files' checksums."""
        started = time.monotonic()
        try:
            databases = load_backup_tables(self.backup_meta)
            for schema in self.backup_meta.schemas:
                db_info = DBInfo.from_json(schema.db)
                table_info = TableInfo.from_json(schema.table)
                table = databases[db_info.name].get_table(table_info.name)
                files = table.files if table is not None else []
                checksum = 0
                for file in files:
                    checksum ^= file.crc64xor
                total_kvs = _checked_sum(file.total_kvs for file in files)
                total_bytes = _checked_sum(file.total_bytes for file in files)
                if (schema.crc64xor, schema.total_kvs, schema.total_bytes) == (
                    checksum, total_kvs, total_bytes
                ):
                    log.info("fast checksum success, db=%s table=%s", db_info.name, table_info.name)
                    continue
                log.error(
                    "failed in fast checksum, database=%s table=%s "
                    "origin crc64=%d calculated crc64=%d origin total kvs=%d "
                    "calculated total kvs=%d origin total bytes=%d calculated total bytes=%d",
                    db_info.name, table_info.name, schema.crc64xor, checksum,
                    schema.total_kvs, total_kvs, schema.total_bytes, total_bytes,
                )
                return False
            return True
        finally:
            log.info("Backup Checksum take=%.3fs", time.monotonic() - started)

    def complete_meta(self, schemas: Schemas) -> None:
        """Wait for the table checksums and store the schemas in the meta."""
        self.backup_meta.schemas = schemas.finish_table_checksum()