from __future__ import annotations

"""Protocols for the collaborators the linkage subsystem depends on."""

from typing import List, Optional, Protocol

from .events import EdgeEventAction, LifecycleEvent, Notification
from .model import Chain, ChainMetadata, MetadataUpdateResult, Node, NodeKind, Relation


class ChainStore(Protocol):
    """
    Durable storage of chains, their metadata and relations.

    Calls are synchronous and may raise; "absent" is reported as None.
    """

    # chains
    def save_chain(self, chain: Chain) -> Chain:
        """Insert (no id) or update (id set) a chain and return the stored copy."""

    def find_chain_by_id(self, tenant_id: str, chain_id: str) -> Optional[Chain]:
        """Return the chain or None."""

    def delete_chain(self, tenant_id: str, chain_id: str) -> None:
        """Delete a chain with its nodes, relations and edge assignments."""

    def get_root_chain(self, tenant_id: str) -> Optional[Chain]:
        """Return the tenant's root chain, if any."""

    def set_root_chain(self, tenant_id: str, chain_id: str) -> bool:
        """Make ``chain_id`` the only root; False when it already was root."""

    # metadata
    def load_metadata(self, tenant_id: str, chain_id: str) -> Optional[ChainMetadata]:
        """Return the full node/relation set of a chain or None."""

    def save_metadata(self, tenant_id: str, metadata: ChainMetadata) -> MetadataUpdateResult:
        """Replace a chain's metadata; report surviving nodes as old/new pairs."""

    # nodes and relations
    def find_nodes_by_type(self, tenant_id: str, kind: NodeKind, search: str) -> List[Node]:
        """Nodes of ``kind`` whose raw configuration contains ``search``."""

    def find_referencing_nodes(self, tenant_id: str, chain_id: str) -> List[Node]:
        """INPUT nodes of any chain that invoke ``chain_id``."""

    def get_node_relations(self, tenant_id: str, node_id: str) -> List[Relation]:
        """Outgoing relations of a node."""

    def delete_relation(self, tenant_id: str, relation: Relation) -> None:
        ...

    def save_relation(self, tenant_id: str, relation: Relation) -> None:
        ...

    # edge
    def find_edge_ids_for_chain(self, tenant_id: str, chain_id: str) -> List[str]:
        """Ids of edges the chain is assigned to."""

    def assign_to_edge(self, tenant_id: str, chain_id: str, edge_id: str) -> Optional[Chain]:
        ...

    def unassign_from_edge(self, tenant_id: str, chain_id: str, edge_id: str) -> Optional[Chain]:
        ...

    def set_edge_template_root(self, tenant_id: str, chain_id: str) -> bool:
        ...

    def set_auto_assign_to_edge(self, tenant_id: str, chain_id: str) -> bool:
        ...

    def unset_auto_assign_to_edge(self, tenant_id: str, chain_id: str) -> bool:
        ...


class Broadcaster(Protocol):
    """Propagates chain lifecycle events through the cluster."""

    def broadcast(self, tenant_id: str, chain_id: str, event: LifecycleEvent) -> None:
        ...


class Notifier(Protocol):
    """Audit / webhook sink; receives exactly one record per mutating call."""

    def notify(self, notification: Notification) -> None:
        ...


class EdgeNotifier(Protocol):
    """Edge-gateway channel used instead of the generic notifier for EDGE chains."""

    def send(self, tenant_id: str, chain_id: str, action: EdgeEventAction) -> None:
        ...


class MetadataFactory(Protocol):
    """Produces the initial metadata of a chain created by name."""

    def __call__(self, chain: Chain) -> ChainMetadata:
        ...


__all__ = [
    "ChainStore",
    "Broadcaster",
    "Notifier",
    "EdgeNotifier",
    "MetadataFactory",
]
