"""Download backup files into the regions of a cluster and ingest them."""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from .restore_util import (
    KeyRange,
    Peer,
    Region,
    RewriteRule,
    RewriteRules,
    SSTMeta,
    find_region_rewrite_rule,
    get_sst_meta_from_file,
    rewrite_raw_key_with_new_prefix,
    truncate_ts,
    with_retry,
)
from .schema import BackupFile

log = logging.getLogger(__name__)

NOT_LEADER = "not leader"
EPOCH_NOT_MATCH = "epoch not match"
REWRITE_RULE_NOT_FOUND = "rewrite rule not found"
RANGE_IS_EMPTY = "range is empty"

IMPORT_FILE_RETRY_TIMES = 16
IMPORT_FILE_WAIT_INTERVAL = 0.01
IMPORT_FILE_MAX_WAIT_INTERVAL = 1.0
DOWNLOAD_SST_RETRY_TIMES = 8
DOWNLOAD_SST_WAIT_INTERVAL = 0.01
DOWNLOAD_SST_MAX_WAIT_INTERVAL = 1.0

_SKIPPED = (REWRITE_RULE_NOT_FOUND, RANGE_IS_EMPTY)


class ImportError_(Exception):
    """Raised when a file cannot be imported; the message names the reason."""


def _is_skip(exc: Exception) -> bool:
    return isinstance(exc, ImportError_) and str(exc) in _SKIPPED


@dataclass
class RegionInfo:
    """A region and its leader, if known."""

    region: Region
    leader: Peer | None = None


@dataclass
class _DownloadRequest:
    sst: SSTMeta
    storage_backend: Any
    name: str
    rewrite_rule: RewriteRule


@dataclass
class _IngestContext:
    region_id: int
    region_epoch: Any
    peer: Peer


@dataclass
class _IngestRequest:
    context: _IngestContext
    sst: SSTMeta


class ImporterClient:
    """Sends download and ingest requests to stores, one cached client per store."""

    def __init__(self, meta_client: Any, dial: Callable[[str], Any]) -> None:
        self.meta_client = meta_client
        self.dial = dial
        self._clients: dict[int, Any] = {}
        self._lock = threading.Lock()

    def _client(self, store_id: int) -> Any:
        with self._lock:
            client = self._clients.get(store_id)
            if client is None:
                store = self.meta_client.get_store(store_id)
                client = self.dial(store.address)
                self._clients[store_id] = client
            return client

    def download_sst(self, store_id: int, request: Any) -> Any:
        """Ask a store to download an SST file."""
        return self._client(store_id).download(request)

    def ingest_sst(self, store_id: int, request: Any) -> Any:
        """Ask a store to ingest a downloaded SST file."""
        return self._client(store_id).ingest(request)


class FileImporter:
    """Imports backup files into the regions they cover."""

    def __init__(
        self,
        meta_client: Any,
        importer_client: Any,
        backend: Any,
        *,
        import_attempts: int = IMPORT_FILE_RETRY_TIMES,
        download_attempts: int = DOWNLOAD_SST_RETRY_TIMES,
        wait_interval: float = IMPORT_FILE_WAIT_INTERVAL,
        max_wait_interval: float = IMPORT_FILE_MAX_WAIT_INTERVAL,
    ) -> None:
        self.meta_client = meta_client
        self.importer_client = importer_client
        self.backend = backend
        self.import_attempts = import_attempts
        self.download_attempts = download_attempts
        self.wait_interval = wait_interval
        self.max_wait_interval = max_wait_interval

    def import_file(self, file: BackupFile, rules: RewriteRules) -> None:
        """Download and ingest file into every region it covers; rules must be encoded."""
        scan_start = rewrite_raw_key_with_new_prefix(file.start_key, rules)
        if scan_start is None:
            log.error("cannot find a rewrite rule for file start key, file=%s", file.name)
            raise ImportError_(REWRITE_RULE_NOT_FOUND)
        scan_end = rewrite_raw_key_with_new_prefix(file.end_key, rules)
        if scan_end is None:
            log.error("cannot find a rewrite rule for file end key, file=%s", file.name)
            raise ImportError_(REWRITE_RULE_NOT_FOUND)

        def import_once() -> None:
            for info in self.meta_client.scan_regions(scan_start, scan_end, 0):
                try:
                    sst = with_retry(
                        lambda: self._download(info, file, rules),
                        lambda exc: not _is_skip(exc),
                        self.download_attempts,
                        self.wait_interval,
                        self.max_wait_interval,
                    )
                except ImportError_ as exc:
                    if _is_skip(exc):
                        continue
                    raise
                try:
                    self._ingest_sst(sst, info)
                except Exception as exc:
                    log.warning(
                        "ingest file failed, file=%s range=%s region=%d: %s",
                        file.name, sst.range, info.region.id, exc,
                    )
                    raise

        with_retry(
            import_once,
            lambda exc: True,
            self.import_attempts,
            self.wait_interval,
            self.max_wait_interval,
        )

    def _download(self, info: RegionInfo, file: BackupFile, rules: RewriteRules) -> SSTMeta:
        try:
            sst, is_empty = self._download_sst(info, file, rules)
        except Exception as exc:
            if not (isinstance(exc, ImportError_) and str(exc) == REWRITE_RULE_NOT_FOUND):
                log.warning(
                    "download file failed, file=%s region=%d: %s", file.name, info.region.id, exc
                )
            raise
        if is_empty:
            log.info(
                "file don't have any key in this region, skip it, file=%s region=%d",
                file.name, info.region.id,
            )
            raise ImportError_(RANGE_IS_EMPTY)
        return sst

    def _download_sst(
        self, info: RegionInfo, file: BackupFile, rules: RewriteRules
    ) -> tuple[SSTMeta, bool]:
        rule = find_region_rewrite_rule(info.region, rules)
        if rule is None:
            raise ImportError_(REWRITE_RULE_NOT_FOUND)
        sst = get_sst_meta_from_file(uuid.uuid4().bytes, file, info.region, rule)
        sst.region_id = info.region.id
        sst.region_epoch = info.region.region_epoch
        request = _DownloadRequest(
            sst=sst, storage_backend=self.backend, name=file.name, rewrite_rule=rule
        )
        response = None
        for peer in info.region.peers:
            response = self.importer_client.download_sst(peer.store_id, request)
            if response.is_empty:
                return sst, True
        if response is None:
            raise ImportError_(f"region {info.region.id} has no peers")
        sst.range = KeyRange(
            start_key=truncate_ts(response.range.start_key),
            end_key=truncate_ts(response.range.end_key),
        )
        return sst, False

    def _ingest_sst(self, sst: SSTMeta, info: RegionInfo) -> None:
        leader = info.leader if info.leader is not None else info.region.peers[0]
        request = _IngestRequest(
            context=_IngestContext(
                region_id=info.region.id,
                region_epoch=info.region.region_epoch,
                peer=leader,
            ),
            sst=dataclasses.replace(sst),
        )
        response = self.importer_client.ingest_sst(leader.store_id, request)
        error = getattr(response, "error", None)
        if error is None:
            return
        if getattr(error, "epoch_not_match", None):
            raise ImportError_(EPOCH_NOT_MATCH)
        if getattr(error, "not_leader", None):
            raise ImportError_(NOT_LEADER)
        raise ImportError_(f"ingest failed: {error}")