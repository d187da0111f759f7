from __future__ import annotations

import pickle
import uuid
from time import sleep, time
from typing import Any, Callable, Iterable, Optional

from kazoo.client import KazooClient

from ..logs import getLogger
from .helpers import ZkConnectionManager
from .structure import BASE_STRUCTURE

QUEUE_POLLING_S = 0.05   # kazoo's Queue.get() does not block

logger = getLogger(__name__)


class Metastore:
    """
    Chain state and message queues kept in ZooKeeper.

    Paths are relative to the client chroot, optionally under '/<group>'.
    Values are serialized with ``packb`` / ``unpackb`` (pickle by default).
    """

    def __init__(
        self,
        connection: ZkConnectionManager,
        group: Optional[str] = None,
        base_structure: Iterable[str] = BASE_STRUCTURE,
        packb: Callable[[Any], bytes] = pickle.dumps,
        unpackb: Callable[[bytes], Any] = pickle.loads,
    ) -> None:
        self._connection = connection
        self._group = group.strip("/") if group else None
        self._packb = packb
        self._unpackb = unpackb

        self.ensure_structure(base_structure)

    @property
    def client(self) -> KazooClient:
        return self._connection.client

    def _path(self, path: str) -> str:
        parts = [p for p in (self._group, (path or "").strip("/")) if p]
        return "/" + "/".join(parts)

    def ensure_structure(self, paths: Iterable[str]) -> None:
        for path in paths:
            self.client.ensure_path(self._path(path))

    # ------------------------------------------------------------------ #
    # Keys
    # ------------------------------------------------------------------ #

    def get_key(self, path: str) -> Any:
        """Decoded value at ``path``; None when the node is absent or empty."""
        full_path = self._path(path)
        if not self.client.exists(full_path):
            return None
        data, _stat = self.client.get(full_path)
        return self._unpackb(data) if data else None

    def update_key(self, path: str, value: Any) -> None:
        full_path = self._path(path)
        data = self._packb(value)
        if self.client.exists(full_path):
            self.client.set(full_path, data)
        else:
            self.client.create(full_path, data, makepath=True)

    def drop_key(self, path: str) -> bool:
        full_path = self._path(path)
        if not self.client.exists(full_path):
            return False
        self.client.delete(full_path, recursive=True)
        return True

    def watch_with_callback(self, path: str, callback: Callable[[Any, str], bool]) -> uuid.UUID:
        """
        Call ``callback(value, full_path)`` whenever the node at ``path`` is
        written. A node that does not exist yet is waited for. The watch ends
        when the callback returns False or when a node seen before is deleted.
        """
        seen = False

        def _on_data(raw: Optional[bytes], full_path: str) -> bool:
            nonlocal seen
            if raw is None:
                if seen:
                    logger.debug("Watched node %s deleted; watch ends", full_path)
                return not seen
            seen = True
            if not raw:
                return True
            return callback(self._unpackb(raw), full_path)

        return self._connection.watch_data(self._path(path), _on_data)

    # ------------------------------------------------------------------ #
    # Queues
    # ------------------------------------------------------------------ #

    def enqueue(self, path: str, value: Any) -> None:
        self.client.Queue(self._path(path)).put(self._packb(value))

    def dequeue(self, path: str, timeout: Optional[float] = None) -> Any:
        """Next decoded item of the queue; None once ``timeout`` seconds pass."""
        queue = self.client.Queue(self._path(path))
        deadline = None if timeout is None else time() + timeout

        item = queue.get()
        while item is None and (deadline is None or time() < deadline):
            sleep(QUEUE_POLLING_S)
            item = queue.get()
        return None if item is None else self._unpackb(item)
