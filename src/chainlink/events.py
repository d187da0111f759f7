from __future__ import annotations

"""Messages handed to the broadcast, audit and edge-sync collaborators."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final, Optional, Sequence


class LifecycleEvent(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


class ActionType(str, Enum):
    ADDED = "ADDED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"
    ASSIGNED_TO_EDGE = "ASSIGNED_TO_EDGE"
    UNASSIGNED_FROM_EDGE = "UNASSIGNED_FROM_EDGE"


class EdgeEventAction(str, Enum):
    ADDED = "ADDED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


@dataclass(frozen=True, slots=True)
class LifecycleMessage:
    """Cluster-wide chain state change; only produced for CORE chains."""

    tenant_id: str
    chain_id: str
    event: LifecycleEvent

    kind: Final[str] = "lifecycle"


@dataclass(frozen=True, slots=True)
class Notification:
    """
    Audit record of one mutating call.

    ``before`` is the entity as handed in by the caller, ``after`` the entity
    produced by storage. On failure ``after`` is None and ``cause`` is set.
    """

    tenant_id: str
    action: ActionType
    success: bool
    entity_id: Optional[str] = None
    before: Any = None
    after: Any = None
    cause: Optional[BaseException] = None
    metadata: Any = None
    related_edge_ids: Sequence[str] = ()
    edge_id: Optional[str] = None
    edge_name: Optional[str] = None
    send_to_edge: bool = False
    extra: dict[str, str] = field(default_factory=dict)

    kind: Final[str] = "notification"


@dataclass(frozen=True, slots=True)
class EdgeSyncMessage:
    """Instruction for the edge gateway to resync a chain."""

    tenant_id: str
    chain_id: str
    action: EdgeEventAction

    kind: Final[str] = "edge_sync"
