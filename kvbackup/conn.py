"""Connections to a cluster: PD over HTTP, stores through a dialer."""

from __future__ import annotations

import enum
import json
import logging
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable

log = logging.getLogger(__name__)

CLUSTER_VERSION_PREFIX = "pd/api/v1/config/cluster-version"
REGION_COUNT_PREFIX = "pd/api/v1/regions/count"
_HTTP_TIMEOUT = 30.0


class StoreState(enum.IntEnum):
    """The state of a store as PD reports it."""

    UP = 0
    OFFLINE = 1
    TOMBSTONE = 2


@dataclass
class Store:
    """A storage node of the cluster."""

    id: int
    address: str = ""
    state: StoreState = StoreState.UP


class PDHTTPError(Exception):
    """Raised when a PD HTTP request fails."""


def pd_get(addr: str, prefix: str, timeout: float = _HTTP_TIMEOUT) -> bytes:
    """GET prefix from the PD at addr and return the body."""
    if addr and not "http".startswith(addr):
        addr = "http://" + addr
    url = f"{addr}/{prefix}"
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            body = response.read()
            status = response.status
    except urllib.error.HTTPError as exc:
        text = exc.read().decode(errors="replace")
        raise PDHTTPError(f"[{exc.code}] {text} {url}") from exc
    except (urllib.error.URLError, OSError, ValueError) as exc:
        raise PDHTTPError(f"{url}: {exc}") from exc
    if status != 200:
        raise PDHTTPError(f"[{status}] {body.decode(errors='replace')} {url}")
    return body


@dataclass
class Mgr:
    """Holds the connections a backup or restore needs."""

    pd_client: Any = None
    storage: Any = None
    domain: Any = None
    pd_http_addrs: list[str] = field(default_factory=list)
    pd_http_get: Callable[[str, str, float], bytes] = pd_get
    http_timeout: float = _HTTP_TIMEOUT
    dial: Callable[[str], Any] | None = None
    _clients: dict[int, Any] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _first_answer(self, prefix: str) -> bytes | None:
        error: Exception | None = None
        for addr in self.pd_http_addrs:
            try:
                return self.pd_http_get(addr, prefix, self.http_timeout)
            except Exception as exc:
                error = exc
        if error is not None:
            raise error
        return None

    def get_cluster_version(self) -> str:
        """Return the cluster version from the first PD that answers."""
        body = self._first_answer(CLUSTER_VERSION_PREFIX)
        return "" if body is None else body.decode()

    def get_region_count(self) -> int:
        """Return the number of regions in the cluster."""
        body = self._first_answer(REGION_COUNT_PREFIX)
        if body is None:
            return 0
        return int(json.loads(body)["count"])

    def get_backup_client(self, store_id: int) -> Any:
        """Return the cached client of a store, connecting on first use."""
        with self._lock:
            client = self._clients.get(store_id)
            if client is not None:
                return client
            if self.dial is None:
                raise RuntimeError("no dialer configured")
            store = self.pd_client.get_store(store_id)
            client = self.dial(store.address)
            self._clients[store_id] = client
            return client

    def get_lock_resolver(self) -> Any:
        """Return the lock resolver of the storage."""
        return self.storage.get_lock_resolver()

    def close(self) -> None:
        """Close the store clients, the domain, the storage and PD."""
        with self._lock:
            clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            try:
                client.close()
            except Exception as exc:
                log.error("fail to close Mgr: %s", exc)
        # The domain must be closed before the storage.
        for part in (self.domain, self.storage, self.pd_client):
            if part is not None:
                part.close()


def new_mgr(
    pd_addrs: str,
    pd_client: Any,
    storage: Any,
    domain: Any,
    dial: Callable[[str], Any] | None,
) -> Mgr:
    """Check that PD answers and the cluster is healthy, then build a Mgr."""
    addrs = pd_addrs.split(",")
    failure: Exception | None = PDHTTPError(f"pd address ({pd_addrs}) has wrong format")
    for addr in addrs:
        try:
            pd_get(addr, CLUSTER_VERSION_PREFIX, _HTTP_TIMEOUT)
        except Exception as exc:
            failure = exc
        else:
            failure = None
            break
    if failure is not None:
        raise PDHTTPError(
            f"pd address ({pd_addrs}) not available, please check network: {failure}"
        ) from failure
    log.info("new mgr, pdAddrs=%s", pd_addrs)

    stores = [s for s in pd_client.get_all_stores() if s.state != StoreState.TOMBSTONE]
    live = sum(1 for s in stores if s.state == StoreState.UP)
    # Assume 3 replicas.
    if live == 0 and len(stores) >= 3 and len(stores) > live + 1:
        log.error("tikv cluster not health, stores=%s", stores)
        raise RuntimeError(f"tikv cluster not health {stores}")

    return Mgr(
        pd_client=pd_client,
        storage=storage,
        domain=domain,
        pd_http_addrs=addrs,
        dial=dial,
    )