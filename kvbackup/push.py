"""Push a backup request down to every store and gather the ranges it covers."""

from __future__ import annotations

import enum
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

from .conn import Store, StoreState
from .range_tree import RangeTree
from .schema import BackupFile

log = logging.getLogger(__name__)

_DONE = object()


class BackupErrorKind(enum.Enum):
    """The kind of error a store reports for a backup range."""

    KV = "kv"
    REGION = "region"
    CLUSTER_ID = "cluster_id"
    UNKNOWN = "unknown"


@dataclass
class BackupError:
    """An error in a backup response.

    ``detail`` is kind specific: the lock for a locked key, or the name of
    the region error.
    """

    kind: BackupErrorKind
    msg: str = ""
    detail: Any = None

    def __str__(self) -> str:
        return f"{self.kind.value} error: {self.msg}"


@dataclass
class BackupRequest:
    """A request to back up a key range at a version."""

    cluster_id: int = 0
    start_key: bytes = b""
    end_key: bytes = b""
    start_version: int = 0
    end_version: int = 0
    storage_backend: Any = None
    rate_limit: int = 0
    concurrency: int = 0


@dataclass
class BackupResponse:
    """One backed-up range, or the error met on it."""

    start_key: bytes = b""
    end_key: bytes = b""
    files: list[BackupFile] = field(default_factory=list)
    error: BackupError | None = None


class BackupFailed(Exception):
    """Raised when a store reports an error that stops the backup."""

    def __init__(self, error: BackupError) -> None:
        super().__init__(str(error))
        self.error = error


class StoreBackupClient(Protocol):
    """A store's backup service: streams responses for a request."""

    def backup(self, request: BackupRequest) -> Iterable[BackupResponse]: ...


def send_backup(
    store_id: int,
    client: StoreBackupClient,
    request: BackupRequest,
    resp_fn: Callable[[BackupResponse], object],
) -> None:
    """Send a request to a store and hand each response to resp_fn.

    Receiving stops as soon as resp_fn raises.
    """
    log.info("try backup, request=%s", request)
    try:
        stream = client.backup(request)
    except Exception:
        log.error("fail to backup, StoreID=%d", store_id)
        raise
    try:
        for resp in stream:
            log.info("range backuped, start=%r end=%r", resp.start_key, resp.end_key)
            resp_fn(resp)
    finally:
        close = getattr(stream, "close", None)
        if callable(close):
            close()
    log.info("backup streaming finish, StoreID=%d", store_id)


class PushDown:
    """Sends one backup request to all live stores at once."""

    def __init__(self, mgr: Any) -> None:
        self.mgr = mgr

    def _send(self, store_id: int, client: StoreBackupClient,
              request: BackupRequest, events: queue.Queue[object]) -> None:
        try:
            send_backup(store_id, client, request, events.put)
        except Exception as exc:
            events.put(exc)

    @staticmethod
    def _finish(threads: list[threading.Thread], events: queue.Queue[object]) -> None:
        for thread in threads:
            thread.join()
        events.put(_DONE)

    def push_backup(
        self,
        request: BackupRequest,
        stores: Iterable[Store],
        update: Callable[[], object] | None = None,
    ) -> RangeTree:
        """Back up the request on every live store; return the covered ranges."""
        result = RangeTree()
        events: queue.Queue[object] = queue.Queue()
        threads = []
        for store in stores:
            if store.state != StoreState.UP:
                log.warning("skip store, StoreID=%d State=%s", store.id, store.state.name)
                continue
            try:
                client = self.mgr.get_backup_client(store.id)
            except Exception:
                log.error("fail to connect store, StoreID=%d", store.id)
                raise
            thread = threading.Thread(
                target=self._send,
                args=(store.id, client, request, events),
                name=f"push-backup-{store.id}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)

        threading.Thread(target=self._finish, args=(threads, events), daemon=True).start()

        while True:
            item = events.get()
            if item is _DONE:
                return result
            if isinstance(item, BaseException):
                raise item
            resp: BackupResponse = item
            if resp.error is None:
                result.put(resp.start_key, resp.end_key, resp.files)
                if update is not None:
                    update()
                continue
            error = resp.error
            if error.kind in (BackupErrorKind.KV, BackupErrorKind.REGION):
                log.error("backup occur %s", error)
                continue
            log.error("backup occur %s", error)
            raise BackupFailed(error)