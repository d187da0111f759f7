from __future__ import annotations

import copy
import json
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

import pytest

from chainlink.events import EdgeEventAction, LifecycleEvent, Notification
from chainlink.model import (
    Chain,
    ChainKind,
    ChainMetadata,
    MetadataUpdateResult,
    Node,
    NodeKind,
    NodeUpdate,
    Relation,
)
from chainlink.usage import references_chain

TENANT = "tenant-1"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class InMemoryChainStore:
    """
    In-memory ChainStore. Records every call in ``calls`` and raises
    RuntimeError for method names listed in ``fail_on``.
    """

    def __init__(self) -> None:
        self.chains: Dict[str, Chain] = {}
        self.metadata: Dict[str, ChainMetadata] = {}
        self.edges: Dict[str, set[str]] = {}
        self.calls: List[tuple[str, tuple]] = []
        self.fail_on: set[str] = set()
        self.metadata_success = True

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def called(self, name: str) -> List[tuple]:
        return [args for n, args in self.calls if n == name]

    # --- chains --------------------------------------------------------

    def save_chain(self, chain: Chain) -> Chain:
        self._record("save_chain", chain)
        saved = replace(chain, id=chain.id or str(uuid.uuid4()))
        self.chains[saved.id] = saved
        self.metadata.setdefault(saved.id, ChainMetadata(chain_id=saved.id))
        return replace(saved)

    def find_chain_by_id(self, tenant_id: str, chain_id: str) -> Optional[Chain]:
        self._record("find_chain_by_id", tenant_id, chain_id)
        chain = self.chains.get(chain_id)
        if chain is None or chain.tenant_id != tenant_id:
            return None
        return replace(chain)

    def delete_chain(self, tenant_id: str, chain_id: str) -> None:
        self._record("delete_chain", tenant_id, chain_id)
        self.chains.pop(chain_id, None)
        self.metadata.pop(chain_id, None)
        for chains in self.edges.values():
            chains.discard(chain_id)

    def get_root_chain(self, tenant_id: str) -> Optional[Chain]:
        self._record("get_root_chain", tenant_id)
        for chain in self.chains.values():
            if chain.tenant_id == tenant_id and chain.root:
                return replace(chain)
        return None

    def set_root_chain(self, tenant_id: str, chain_id: str) -> bool:
        self._record("set_root_chain", tenant_id, chain_id)
        target = self.chains[chain_id]
        if target.root:
            return False
        for cid, chain in list(self.chains.items()):
            if chain.tenant_id == tenant_id and chain.root:
                self.chains[cid] = replace(chain, root=False)
        self.chains[chain_id] = replace(target, root=True)
        return True

    # --- metadata ------------------------------------------------------

    def load_metadata(self, tenant_id: str, chain_id: str) -> Optional[ChainMetadata]:
        self._record("load_metadata", tenant_id, chain_id)
        if chain_id not in self.chains:
            return None
        return copy.deepcopy(self.metadata.get(chain_id, ChainMetadata(chain_id=chain_id)))

    def save_metadata(self, tenant_id: str, metadata: ChainMetadata) -> MetadataUpdateResult:
        self._record("save_metadata", tenant_id, metadata)
        if not self.metadata_success or metadata.chain_id not in self.chains:
            return MetadataUpdateResult(success=False)
        before = {n.id: n for n in self.metadata.get(metadata.chain_id, ChainMetadata()).nodes}
        stored = [
            replace(n, id=n.id or str(uuid.uuid4()), chain_id=metadata.chain_id)
            for n in copy.deepcopy(metadata.nodes)
        ]
        self.metadata[metadata.chain_id] = ChainMetadata(
            chain_id=metadata.chain_id,
            nodes=stored,
            relations=list(metadata.relations),
            first_node_id=metadata.first_node_id,
        )
        updates = [NodeUpdate(old=before[n.id], new=n) for n in stored if n.id in before]
        return MetadataUpdateResult(success=True, updated_nodes=updates)

    # --- nodes and relations -------------------------------------------

    def _all_nodes(self, tenant_id: str) -> List[Node]:
        return [
            n
            for cid, md in self.metadata.items()
            if self.chains.get(cid) is not None and self.chains[cid].tenant_id == tenant_id
            for n in md.nodes
        ]

    def find_nodes_by_type(self, tenant_id: str, kind: NodeKind, search: str) -> List[Node]:
        self._record("find_nodes_by_type", tenant_id, kind, search)
        found = []
        for node in self._all_nodes(tenant_id):
            raw = node.configuration
            text = raw if isinstance(raw, str) else json.dumps(raw)
            if node.kind is kind and search in text:
                found.append(copy.deepcopy(node))
        return found

    def find_referencing_nodes(self, tenant_id: str, chain_id: str) -> List[Node]:
        self._record("find_referencing_nodes", tenant_id, chain_id)
        return [
            copy.deepcopy(n)
            for n in self._all_nodes(tenant_id)
            if n.kind is NodeKind.INPUT and references_chain(n, chain_id)
        ]

    def _metadata_of_node(self, node_id: str) -> Optional[ChainMetadata]:
        for md in self.metadata.values():
            if md.node(node_id) is not None:
                return md
        return None

    def get_node_relations(self, tenant_id: str, node_id: str) -> List[Relation]:
        self._record("get_node_relations", tenant_id, node_id)
        md = self._metadata_of_node(node_id)
        return md.outgoing(node_id) if md is not None else []

    def delete_relation(self, tenant_id: str, relation: Relation) -> None:
        self._record("delete_relation", tenant_id, relation)
        md = self._metadata_of_node(relation.from_id)
        if md is not None:
            md.relations = [r for r in md.relations if r != relation]

    def save_relation(self, tenant_id: str, relation: Relation) -> None:
        self._record("save_relation", tenant_id, relation)
        md = self._metadata_of_node(relation.from_id)
        if md is not None and relation not in md.relations:
            md.relations.append(relation)

    # --- edge ------------------------------------------------------------

    def find_edge_ids_for_chain(self, tenant_id: str, chain_id: str) -> List[str]:
        self._record("find_edge_ids_for_chain", tenant_id, chain_id)
        return sorted(e for e, chains in self.edges.items() if chain_id in chains)

    def assign_to_edge(self, tenant_id: str, chain_id: str, edge_id: str) -> Optional[Chain]:
        self._record("assign_to_edge", tenant_id, chain_id, edge_id)
        self.edges.setdefault(edge_id, set()).add(chain_id)
        return self.find_chain_by_id(tenant_id, chain_id)

    def unassign_from_edge(self, tenant_id: str, chain_id: str, edge_id: str) -> Optional[Chain]:
        self._record("unassign_from_edge", tenant_id, chain_id, edge_id)
        self.edges.get(edge_id, set()).discard(chain_id)
        return self.find_chain_by_id(tenant_id, chain_id)

    def set_edge_template_root(self, tenant_id: str, chain_id: str) -> bool:
        self._record("set_edge_template_root", tenant_id, chain_id)
        self.chains[chain_id] = replace(self.chains[chain_id], edge_template_root=True)
        return True

    def set_auto_assign_to_edge(self, tenant_id: str, chain_id: str) -> bool:
        self._record("set_auto_assign_to_edge", tenant_id, chain_id)
        self.chains[chain_id] = replace(self.chains[chain_id], auto_assign_to_edge=True)
        return True

    def unset_auto_assign_to_edge(self, tenant_id: str, chain_id: str) -> bool:
        self._record("unset_auto_assign_to_edge", tenant_id, chain_id)
        self.chains[chain_id] = replace(self.chains[chain_id], auto_assign_to_edge=False)
        return True


class RecordingBroadcaster:
    def __init__(self) -> None:
        self.events: List[tuple[str, str, LifecycleEvent]] = []

    def broadcast(self, tenant_id: str, chain_id: str, event: LifecycleEvent) -> None:
        self.events.append((tenant_id, chain_id, event))


class RecordingNotifier:
    def __init__(self) -> None:
        self.notifications: List[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)


class RecordingEdgeNotifier:
    def __init__(self) -> None:
        self.messages: List[tuple[str, str, EdgeEventAction]] = []

    def send(self, tenant_id: str, chain_id: str, action: EdgeEventAction) -> None:
        self.messages.append((tenant_id, chain_id, action))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def output_node(node_id: str, name: str) -> Node:
    return Node(id=node_id, name=name, kind=NodeKind.OUTPUT)


def input_node(node_id: str, name: str, target_chain_id: str) -> Node:
    return Node(id=node_id, name=name, kind=NodeKind.INPUT, configuration={"chainId": target_chain_id})


def other_node(node_id: str, name: str) -> Node:
    return Node(id=node_id, name=name, kind=NodeKind.OTHER)


def add_chain(
    store: InMemoryChainStore,
    chain_id: str,
    name: str,
    nodes: List[Node],
    relations: List[Relation] = (),
    kind: ChainKind = ChainKind.CORE,
    tenant_id: str = TENANT,
) -> Chain:
    chain = Chain(id=chain_id, tenant_id=tenant_id, name=name, kind=kind)
    store.chains[chain_id] = chain
    store.metadata[chain_id] = ChainMetadata(
        chain_id=chain_id,
        nodes=[replace(n, chain_id=chain_id) for n in nodes],
        relations=list(relations),
    )
    return replace(chain)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryChainStore:
    return InMemoryChainStore()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def edge_notifier() -> RecordingEdgeNotifier:
    return RecordingEdgeNotifier()


@pytest.fixture
def linked_chains(store):
    """
    "Checks" exports Yes/No (two OUTPUT nodes share "Yes").
    "Main" and "Alarms" invoke it and route on its labels.
    """
    checks = add_chain(
        store,
        "checks",
        "Checks",
        [
            other_node("c-filter", "Filter"),
            output_node("c-yes-1", "Yes"),
            output_node("c-yes-2", "Yes"),
            output_node("c-no", "No"),
        ],
        [Relation("c-filter", "c-yes-1", "True"), Relation("c-filter", "c-no", "False")],
    )
    main = add_chain(
        store,
        "main",
        "Main",
        [input_node("m-call", "Call checks", "checks"), other_node("m-save", "Save"), other_node("m-drop", "Drop")],
        [Relation("m-call", "m-save", "Yes"), Relation("m-call", "m-drop", "No")],
    )
    alarms = add_chain(
        store,
        "alarms",
        "Alarms",
        [input_node("a-call", "Run checks", "checks"), other_node("a-raise", "Raise")],
        [Relation("a-call", "a-raise", "Yes")],
    )
    return checks, main, alarms
