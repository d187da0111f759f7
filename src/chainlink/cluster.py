from __future__ import annotations

"""
ZooKeeper-backed collaborators: cluster lifecycle broadcast and the
edge-sync channel.
"""

from typing import Callable, Optional
import uuid

from .events import EdgeEventAction, EdgeSyncMessage, LifecycleEvent, LifecycleMessage
from .logs import getLogger
from .metastore import Metastore
from .metastore.structure import CHAINS, EDGE_QUEUES, LIFECYCLE_QUEUE

logger = getLogger(__name__)


def chain_state_path(tenant_id: str, chain_id: str) -> str:
    return f"{CHAINS}/{tenant_id}/{chain_id}"


def edge_queue_path(tenant_id: str) -> str:
    return f"{EDGE_QUEUES}/{tenant_id}"


class ClusterBroadcaster:
    """
    Broadcaster that publishes chain lifecycle events through the metastore.

    - Every event is put on the shared lifecycle queue.
    - The last event per chain is kept under the chain's state path, so
      nodes can watch a single chain.
    """

    def __init__(self, meta: Metastore) -> None:
        self.meta = meta

    def broadcast(self, tenant_id: str, chain_id: str, event: LifecycleEvent) -> None:
        message = LifecycleMessage(tenant_id=tenant_id, chain_id=chain_id, event=event)
        self.meta.enqueue(LIFECYCLE_QUEUE, message)

        state_path = chain_state_path(tenant_id, chain_id)
        if event is LifecycleEvent.DELETED:
            self.meta.drop_key(state_path)
        else:
            self.meta.update_key(state_path, event)
        logger.debug("[%s][%s] Broadcast %s", tenant_id, chain_id, event.value)

    def next_event(self, timeout: Optional[float] = None) -> Optional[LifecycleMessage]:
        """Take the next lifecycle message from the queue; None on timeout."""
        return self.meta.dequeue(LIFECYCLE_QUEUE, timeout=timeout)

    def last_event(self, tenant_id: str, chain_id: str) -> Optional[LifecycleEvent]:
        return self.meta.get_key(chain_state_path(tenant_id, chain_id))

    def watch_chain(
        self,
        tenant_id: str,
        chain_id: str,
        callback: Callable[[LifecycleEvent], bool],
    ) -> uuid.UUID:
        """
        Call ``callback`` with every new state of a chain, including chains
        that have not been broadcast yet. The watch ends when the chain is
        deleted or the callback returns False.
        """
        return self.meta.watch_with_callback(
            chain_state_path(tenant_id, chain_id),
            lambda event, _path: callback(event),
        )


class EdgeSyncPublisher:
    """EdgeNotifier that queues EdgeSyncMessages per tenant for the edge gateway."""

    def __init__(self, meta: Metastore) -> None:
        self.meta = meta

    def send(self, tenant_id: str, chain_id: str, action: EdgeEventAction) -> None:
        message = EdgeSyncMessage(tenant_id=tenant_id, chain_id=chain_id, action=action)
        self.meta.enqueue(edge_queue_path(tenant_id), message)
        logger.debug("[%s][%s] Queued edge sync %s", tenant_id, chain_id, action.value)

    def next_message(self, tenant_id: str, timeout: Optional[float] = None) -> Optional[EdgeSyncMessage]:
        return self.meta.dequeue(edge_queue_path(tenant_id), timeout=timeout)
