"""Collect the schemas of backed-up tables and their checksums."""

from __future__ import annotations

import dataclasses
import functools
import logging
import queue
import threading
import time
from typing import Callable

from .checksum import ChecksumClient, ChecksumResponse, ExecutorBuilder
from .schema import BackupSchema, TableInfo, enclose_name
from .worker import WorkerPool

log = logging.getLogger(__name__)

DEFAULT_SCHEMA_CONCURRENCY = 64

_DONE = object()


def calculate_checksum(table: TableInfo, client: ChecksumClient, backup_ts: int) -> ChecksumResponse:
    """Return the checksum of a table at the backup timestamp."""
    return ExecutorBuilder(table, backup_ts).build().execute(client, lambda: None)


class Schemas:
    """Pending table schemas whose checksums are computed in the background."""

    def __init__(self) -> None:
        self._schemas: dict[str, BackupSchema] = {}
        self._results: queue.Queue[object] = queue.Queue()
        self.skip_checksum = False

    def push_pending(self, schema: BackupSchema, db_name: str, table_name: str) -> None:
        """Add a table schema under its quoted name."""
        self._schemas[f"{enclose_name(db_name)}.{enclose_name(table_name)}"] = schema

    def set_skip_checksum(self, skip: bool) -> None:
        """Choose whether to skip computing checksums."""
        self.skip_checksum = skip

    def __len__(self) -> int:
        return len(self._schemas)

    def start(
        self,
        client: ChecksumClient,
        backup_ts: int,
        concurrency: int,
        update: Callable[[], object] | None = None,
    ) -> None:
        """Start computing checksums on up to ``concurrency`` threads."""
        pool = WorkerPool(max(1, concurrency), "Schemas")
        items = list(self._schemas.items())
        threading.Thread(
            target=self._run,
            args=(pool, items, client, backup_ts, update),
            name="backup-schemas",
            daemon=True,
        ).start()

    def _run(self, pool, items, client, backup_ts, update) -> None:
        start_all = time.monotonic()
        for name, schema in items:
            log.info("table checksum start, table=%s", name)
            pool.apply(functools.partial(
                self._checksum_one, name, schema, client, backup_ts, update
            ))
        try:
            pool.wait()
        finally:
            self._results.put(_DONE)
            log.info("Backup Checksum take=%.3fs", time.monotonic() - start_all)

    def _checksum_one(self, name, schema, client, backup_ts, update) -> None:
        try:
            if self.skip_checksum:
                result = dataclasses.replace(schema)
            else:
                started = time.monotonic()
                table = TableInfo.from_json(schema.table)
                resp = calculate_checksum(table, client, backup_ts)
                result = dataclasses.replace(
                    schema,
                    crc64xor=resp.checksum,
                    total_kvs=resp.total_kvs,
                    total_bytes=resp.total_bytes,
                )
                log.info(
                    "table checksum finished, table=%s crc64xor=%d total_kvs=%d "
                    "total_bytes=%d take=%.3fs",
                    name, resp.checksum, resp.total_kvs, resp.total_bytes,
                    time.monotonic() - started,
                )
        except Exception as exc:
            self._results.put(exc)
            return
        self._results.put(result)
        if update is not None:
            update()

    def finish_table_checksum(self) -> list[BackupSchema]:
        """Wait for the checksums; raise the first error a table met."""
        schemas: list[BackupSchema] = []
        while True:
            item = self._results.get()
            if item is _DONE:
                return schemas
            if isinstance(item, BaseException):
                raise item
            schemas.append(item)