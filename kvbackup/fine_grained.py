"""Retry the ranges a pushed-down backup left uncovered, region by region."""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
import time
from typing import Any, Callable

from .push import BackupErrorKind, BackupFailed, BackupRequest, BackupResponse, send_backup
from .range_tree import Range, RangeTree
from .schema import encode_bytes

log = logging.getLogger(__name__)

# Maximum total sleep time (in ms) for fine grained backup.
BACKUP_FINE_GRAINED_MAX_BACKOFF = 80000
REGION_ERROR_BACKOFF_MS = 1000
_FIND_LEADER_ATTEMPTS = 5
_WORKERS = 4

_IGNORED_REGION_ERRORS = frozenset({
    "epoch_not_match",
    "not_leader",
    "region_not_found",
    "server_is_busy",
    "stale_command",
    "store_not_match",
})

_DONE = object()


class LeaderNotFound(Exception):
    """Raised when no leader can be found for a key."""


def find_region_leader(pd_client: Any, key: bytes) -> Any:
    """Return the leader peer of the region holding key."""
    # Keys are stored encoded, so encode before asking for the region.
    encoded = encode_bytes(key)
    for attempt in range(_FIND_LEADER_ATTEMPTS):
        try:
            _, leader = pd_client.get_region(encoded)
        except Exception as exc:
            log.error("find leader failed: %s", exc)
            time.sleep(0.1 * attempt)
            continue
        if leader is not None:
            log.info("find leader, leader=%s key=%r", leader, encoded)
            return leader
        log.warning("no region found, key=%r", encoded)
        time.sleep(0.1 * attempt)
    raise LeaderNotFound(f"can not find leader for key {encoded!r}")


def on_backup_response(
    lock_resolver: Any, resp: BackupResponse
) -> tuple[BackupResponse | None, int]:
    """Classify a response: return it if good, else how long to back off (ms).

    Errors that must stop the backup raise BackupFailed.
    """
    error = resp.error
    if error is None:
        return resp, 0
    if error.kind is BackupErrorKind.KV:
        if error.detail is not None:
            log.warning("backup occur kv error: %s", error)
            ms_before_expired = lock_resolver.resolve_locks([error.detail])
            return None, max(0, int(ms_before_expired))
        log.error("unexpect kv error: %s", error)
        raise BackupFailed(error)
    if error.kind is BackupErrorKind.REGION:
        if error.detail not in _IGNORED_REGION_ERRORS:
            log.error("unexpect region error: %s", error)
            raise BackupFailed(error)
        log.warning("backup occur region error: %s", error)
        return None, REGION_ERROR_BACKOFF_MS
    log.error("backup occur %s", error)
    raise BackupFailed(error)


def handle_fine_grained(
    mgr: Any,
    request: BackupRequest,
    emit: Callable[[BackupResponse], object],
) -> int:
    """Back up request's range on its leader store; return the backoff wanted (ms)."""
    leader = find_region_leader(mgr.pd_client, request.start_key)
    store_id = leader.store_id
    lock_resolver = mgr.get_lock_resolver()
    try:
        client = mgr.get_backup_client(store_id)
    except Exception:
        log.error("fail to connect store, StoreID=%d", store_id)
        raise
    backoff = 0

    def on_response(resp: BackupResponse) -> None:
        nonlocal backoff
        response, backoff_ms = on_backup_response(lock_resolver, resp)
        backoff = max(backoff, backoff_ms)
        if response is not None:
            emit(response)

    send_backup(store_id, client, request, on_response)
    return backoff


def _worker(
    mgr: Any,
    request: BackupRequest,
    work: queue.Queue[Range | None],
    events: queue.Queue[object],
    backoffs: list[int],
    lock: threading.Lock,
) -> None:
    while True:
        rg = work.get()
        if rg is None:
            return
        sub = dataclasses.replace(request, start_key=rg.start_key, end_key=rg.end_key)
        try:
            backoff_ms = handle_fine_grained(mgr, sub, events.put)
        except Exception as exc:
            events.put(exc)
            return
        if backoff_ms:
            with lock:
                backoffs.append(backoff_ms)


def _run_round(
    mgr: Any, request: BackupRequest, incomplete: list[Range], events: queue.Queue[object]
) -> list[int]:
    work: queue.Queue[Range | None] = queue.Queue()
    for rg in incomplete:
        work.put(rg)
    for _ in range(_WORKERS):
        work.put(None)
    backoffs: list[int] = []
    lock = threading.Lock()
    threads = [
        threading.Thread(
            target=_worker,
            args=(mgr, request, work, events, backoffs, lock),
            name=f"fine-grained-{n}",
            daemon=True,
        )
        for n in range(_WORKERS)
    ]
    for thread in threads:
        thread.start()

    def finish() -> None:
        for thread in threads:
            thread.join()
        events.put(_DONE)

    threading.Thread(target=finish, daemon=True).start()
    return backoffs


def fine_grained_backup(
    mgr: Any,
    request: BackupRequest,
    range_tree: RangeTree,
    update: Callable[[], object] | None = None,
) -> None:
    """Back up every part of request's range missing from range_tree."""
    slept_ms = 0
    while True:
        incomplete = range_tree.get_incomplete_range(request.start_key, request.end_key)
        if not incomplete:
            return
        log.info("start fine grained backup, incomplete=%d", len(incomplete))
        events: queue.Queue[object] = queue.Queue()
        backoffs = _run_round(mgr, request, incomplete, events)
        while True:
            item = events.get()
            if item is _DONE:
                break
            if isinstance(item, BaseException):
                raise item
            resp: BackupResponse = item
            log.info("put fine grained range, start=%r end=%r", resp.start_key, resp.end_key)
            range_tree.put(resp.start_key, resp.end_key, resp.files)
            if update is not None:
                update()
        backoff_ms = max(backoffs, default=0)
        if backoff_ms:
            log.info("handle fine grained, backoffMs=%d", backoff_ms)
            if slept_ms + backoff_ms > BACKUP_FINE_GRAINED_MAX_BACKOFF:
                raise TimeoutError(
                    f"fine grained backup exceeded {BACKUP_FINE_GRAINED_MAX_BACKOFF}ms of backoff"
                )
            slept_ms += backoff_ms
            time.sleep(backoff_ms / 1000)