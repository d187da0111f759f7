from __future__ import annotations

import uuid
from threading import RLock
from typing import Any, Callable, Dict, Optional

from kazoo.client import KazooClient, KazooState
from kazoo.recipe.watchers import DataWatch
from kazoo.retry import KazooRetry

from ..config import ZookeeperSettings
from ..logs import getLogger

logger = getLogger(__name__)

DataCallback = Callable[[Optional[bytes], str], bool]


def create_zk_client(settings: ZookeeperSettings) -> KazooClient:
    """Build (but do not start) a KazooClient from ZookeeperSettings."""
    hosts = settings.hosts
    if settings.chroot:
        hosts = f"{hosts}/{settings.chroot.strip('/')}"

    retry = KazooRetry(max_tries=settings.max_retries, delay=settings.retry_delay_s)
    auth_data = None
    if settings.auth_scheme and settings.auth_credentials:
        auth_data = [(settings.auth_scheme, settings.auth_credentials)]

    return KazooClient(
        hosts=hosts,
        timeout=settings.session_timeout_s,
        connection_retry=retry,
        command_retry=retry,
        auth_data=auth_data,
    )


class ZkConnectionManager:
    """
    Owns the single KazooClient of a process and the data watches set on it.

    kazoo's DataWatch re-arms itself once a lost session is re-established,
    so watches are installed exactly once. A callback returning False ends
    its watch.
    """

    def __init__(self, settings: ZookeeperSettings) -> None:
        self._settings = settings
        self._client = create_zk_client(settings)
        self._client.add_listener(self._on_state_change)

        self._lock = RLock()
        self._watches: Dict[uuid.UUID, str] = {}
        self._session_lost = False

    @property
    def client(self) -> KazooClient:
        return self._client

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        self._client.start(timeout=self._settings.connection_timeout_s)
        logger.info("Zookeeper client started")

    def stop(self) -> None:
        self._client.stop()
        self._client.close()
        logger.info("Zookeeper client stopped")

    # ------------------------------------------------------------------ #
    # Watches
    # ------------------------------------------------------------------ #

    def watch_data(self, path: str, callback: DataCallback) -> uuid.UUID:
        """Watch the node at ``path``; ``callback(data, path)`` gets None while it is absent."""
        watch_id = uuid.uuid4()
        with self._lock:
            self._watches[watch_id] = path

        def _wrapped(data: Optional[bytes], _stat: Any, _event: Any = None) -> bool:
            keep = bool(callback(data, path))
            if not keep:
                with self._lock:
                    self._watches.pop(watch_id, None)
            return keep

        DataWatch(self._client, path, _wrapped)
        return watch_id

    # ------------------------------------------------------------------ #
    # Session handling
    # ------------------------------------------------------------------ #

    def _on_state_change(self, state: KazooState) -> None:
        # Runs on kazoo's event thread: no blocking calls here.
        if state == KazooState.LOST:
            logger.warning("Zookeeper session lost")
            self._session_lost = True
        elif state == KazooState.SUSPENDED:
            logger.warning("Zookeeper connection suspended")
        elif state == KazooState.CONNECTED and self._session_lost:
            self._session_lost = False
            with self._lock:
                active = len(self._watches)
            logger.info("Zookeeper session re-established; %d data watch(es) re-arm", active)
