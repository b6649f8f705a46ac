"""Restore a backup into a cluster: recreate schemas, import files, verify checksums."""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Iterable, Protocol

from . import tso
from .checksum import ChecksumClient, ExecutorBuilder
from .conn import StoreState
from .restore_db import DB
from .restore_util import (
    RewriteRule,
    RewriteRules,
    encode_rewrite_rules,
    get_rewrite_rules,
    with_retry,
)
from .schema import (
    BackupMeta,
    Database,
    DBInfo,
    Table,
    TableInfo,
    encode_table_prefix,
    load_backup_tables,
)
from .worker import WorkerPool

log = logging.getLogger(__name__)

RESET_TS_RETRY_TIME = 16
RESET_TS_WAIT_INTERVAL = 0.05
RESET_TS_MAX_WAIT_INTERVAL = 0.5

DEFAULT_CHECKSUM_CONCURRENCY = 64
DEFAULT_TABLE_CONCURRENCY = 128
DEFAULT_FILE_CONCURRENCY = 128

IMPORT_MODE = "import"
NORMAL_MODE = "normal"


class InfoSchema(Protocol):
    """The current schemas of the cluster."""

    def table_by_name(self, db_name: str, table_name: str) -> TableInfo: ...


class RestoreClient:
    """Sends the requests that restore backup files into a cluster."""

    def __init__(
        self,
        pd_client: Any,
        db: DB,
        *,
        dial: Callable[[str], Any] | None = None,
        reset_fn: Callable[[str, int], object] | None = None,
        table_concurrency: int = DEFAULT_TABLE_CONCURRENCY,
    ) -> None:
        self.pd_client = pd_client
        self.db = db
        self._dial = dial
        self._reset_fn = reset_fn if reset_fn is not None else tso.reset_ts
        self._cancelled = threading.Event()
        self.table_worker_pool = WorkerPool(table_concurrency, "table")
        self.worker_pool = WorkerPool(DEFAULT_FILE_CONCURRENCY, "file")
        self.file_importer: Any = None
        self.databases: dict[str, Database] = {}
        self.backup_meta: BackupMeta | None = None
        self.is_online = False

    def close(self) -> None:
        """Close the SQL session and cancel pending work."""
        self.db.close()
        self._cancelled.set()
        log.info("Restore client closed")

    def init_backup_meta(self, meta: BackupMeta, importer: Any) -> None:
        """Load the schemas of a backup and use importer to import its files."""
        self.databases = load_backup_tables(meta)
        self.backup_meta = meta
        self.file_importer = importer

    def set_concurrency(self, concurrency: int) -> None:
        """Set how many files are imported at once."""
        self.worker_pool = WorkerPool(concurrency, "file")

    def enable_online(self) -> None:
        """Restore without switching the stores into import mode."""
        self.is_online = True

    def get_ts(self) -> int:
        """Return a fresh timestamp from PD."""
        physical, logical = self.pd_client.get_ts()
        return tso.encode_ts(tso.Timestamp(physical=physical, logical=logical))

    def reset_ts(self, pd_addrs: list[str]) -> None:
        """Move PD's timestamp past the end version of the backup."""
        if self.backup_meta is None:
            raise RuntimeError("backup meta is not loaded")
        if not pd_addrs:
            raise ValueError("no PD address given")
        restore_ts = self.backup_meta.end_version
        log.info("reset pd timestamp, ts=%d", restore_ts)
        attempt = 0

        def reset() -> None:
            self._reset_fn(pd_addrs[attempt % len(pd_addrs)], restore_ts)

        def next_address(_exc: Exception) -> bool:
            nonlocal attempt
            attempt += 1
            return True

        with_retry(
            reset, next_address, RESET_TS_RETRY_TIME,
            RESET_TS_WAIT_INTERVAL, RESET_TS_MAX_WAIT_INTERVAL,
        )

    def get_databases(self) -> list[Database]:
        """Return every database of the backup."""
        return list(self.databases.values())

    def get_database(self, name: str) -> Database | None:
        """Return a database of the backup by name, or None."""
        return self.databases.get(name)

    def create_database(self, db: DBInfo) -> None:
        """Create a database."""
        self.db.create_database(db)

    def create_tables(
        self, info_schema: InfoSchema, tables: list[Table]
    ) -> tuple[RewriteRules, list[TableInfo]]:
        """Create the tables and return their rewrite rules and new schemas.

        The tables are sorted by id in place, so the new tables keep the
        ordering of the old ids and line up with the returned list.
        """
        rules = RewriteRules()
        new_tables: list[TableInfo] = []
        tables.sort(key=lambda table: table.schema.id)
        id_map: dict[int, int] = {}
        for table in tables:
            self.db.create_table(table)
            new_info = info_schema.table_by_name(table.db.name, table.schema.name)
            table_rules = get_rewrite_rules(new_info, table.schema)
            id_map[table.schema.id] = new_info.id
            rules.table.extend(table_rules.table)
            rules.data.extend(table_rules.data)
            new_tables.append(new_info)
        # A rule for id + 1 is needed unless that id is itself restored.
        for old_id, new_id in id_map.items():
            if old_id + 1 not in id_map:
                rules.table.append(RewriteRule(
                    old_key_prefix=encode_table_prefix(old_id + 1),
                    new_key_prefix=encode_table_prefix(new_id + 1),
                ))
        return rules, new_tables

    def _run_tasks(
        self,
        pool: WorkerPool,
        tasks: list[Callable[[], object]],
        cancel_on_error: bool,
    ) -> None:
        results: queue.Queue[Exception | None] = queue.Queue()

        def wrap(task: Callable[[], object]) -> Callable[[], None]:
            def run() -> None:
                if self._cancelled.is_set():
                    results.put(None)
                    return
                try:
                    task()
                except Exception as exc:
                    results.put(exc)
                    return
                results.put(None)
            return run

        for task in tasks:
            pool.apply(wrap(task))
        first: Exception | None = None
        for _ in tasks:
            error = results.get()
            if error is not None and first is None:
                first = error
                if cancel_on_error:
                    self._cancelled.set()
        if first is not None:
            raise first

    def restore_table(
        self,
        table: Table,
        rules: RewriteRules,
        update: Callable[[], object] | None = None,
    ) -> None:
        """Import every file of a table."""
        if self.file_importer is None:
            raise RuntimeError("backup meta is not loaded")
        started = time.monotonic()
        log.debug(
            "start to restore table, table=%s db=%s files=%s",
            table.schema.name, table.db.name, [file.name for file in table.files],
        )
        encoded = encode_rewrite_rules(rules)
        importer = self.file_importer

        def make_task(file: Any) -> Callable[[], None]:
            def task() -> None:
                importer.import_file(file, encoded)
                if update is not None:
                    update()
            return task

        try:
            self._run_tasks(
                self.worker_pool, [make_task(file) for file in table.files], cancel_on_error=True
            )
        except Exception as exc:
            log.error(
                "restore table failed, table=%s db=%s: %s", table.schema.name, table.db.name, exc
            )
            raise
        finally:
            log.info(
                "Restore Table, table=%s take=%.3fs", table.schema.name, time.monotonic() - started
            )
        log.info("finish to restore table, table=%s db=%s", table.schema.name, table.db.name)

    def restore_database(
        self,
        db: Database,
        rules: RewriteRules,
        update: Callable[[], object] | None = None,
    ) -> None:
        """Restore every table of a database."""
        started = time.monotonic()
        tasks = [
            (lambda table=table: self.restore_table(table, rules, update)) for table in db.tables
        ]
        try:
            self._run_tasks(self.table_worker_pool, tasks, cancel_on_error=False)
        finally:
            log.info(
                "Restore Database, db=%s take=%.3fs", db.schema.name, time.monotonic() - started
            )

    def restore_all(
        self, rules: RewriteRules, update: Callable[[], object] | None = None
    ) -> None:
        """Restore every database of the backup."""
        started = time.monotonic()
        tasks = [
            (lambda db=db: self.restore_database(db, rules, update))
            for db in self.databases.values()
        ]
        try:
            self._run_tasks(self.table_worker_pool, tasks, cancel_on_error=False)
        finally:
            log.info("Restore All take=%.3fs", time.monotonic() - started)

    def switch_to_import_mode_if_offline(self) -> None:
        """Switch the stores to import mode unless restoring online."""
        if not self.is_online:
            self._switch_tikv_mode(IMPORT_MODE)

    def switch_to_normal_mode_if_offline(self) -> None:
        """Switch the stores back to normal mode unless restoring online."""
        if not self.is_online:
            self._switch_tikv_mode(NORMAL_MODE)

    def _switch_tikv_mode(self, mode: str) -> None:
        if self._dial is None:
            raise RuntimeError("no store dialer configured")
        for store in self.pd_client.get_all_stores():
            if store.state == StoreState.TOMBSTONE:
                continue
            conn = self._dial(store.address)
            conn.switch_mode(mode)
            try:
                conn.close()
            except Exception as exc:
                log.error("close connection failed in switch mode: %s", exc)

    def validate_checksum(
        self,
        kv_client: ChecksumClient,
        tables: Iterable[Table],
        new_tables: Iterable[TableInfo],
        update: Callable[[], object] | None = None,
    ) -> None:
        """Check that each restored table has the checksum its backup recorded."""
        started = time.monotonic()
        log.info("Start to validate checksum")
        pairs = list(zip(tables, new_tables, strict=True))
        workers = WorkerPool(DEFAULT_CHECKSUM_CONCURRENCY, "RestoreChecksum")
        results: queue.Queue[Exception | None] = queue.Queue()

        def check(table: Table, new_table: TableInfo) -> None:
            try:
                start_ts = self.get_ts()
                executor = ExecutorBuilder(new_table, start_ts).set_old_table(table).build()
                resp = executor.execute(kv_client, lambda: None)
                if (resp.checksum, resp.total_kvs, resp.total_bytes) != (
                    table.crc64xor, table.total_kvs, table.total_bytes
                ):
                    log.error(
                        "failed in validate checksum, database=%s table=%s "
                        "origin crc64=%d calculated crc64=%d origin total kvs=%d "
                        "calculated total kvs=%d origin total bytes=%d calculated total bytes=%d",
                        table.db.name, table.schema.name, table.crc64xor, resp.checksum,
                        table.total_kvs, resp.total_kvs, table.total_bytes, resp.total_bytes,
                    )
                    raise ValueError("failed to validate checksum")
            except Exception as exc:
                results.put(exc)
                return
            if update is not None:
                update()
            results.put(None)

        try:
            for table, new_table in pairs:
                workers.apply(lambda table=table, new_table=new_table: check(table, new_table))
            for _ in pairs:
                error = results.get()
                if error is not None:
                    raise error
        finally:
            log.info("Restore Checksum take=%.3fs", time.monotonic() - started)
        log.info("validate checksum passed!!")