from __future__ import annotations

"""
In-memory model of rule chains: chains, nodes, labeled relations and the
per-chain metadata unit they are loaded and saved in.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence


class ChainKind(str, Enum):
    CORE = "CORE"
    EDGE = "EDGE"


class NodeKind(str, Enum):
    """Closed classification of nodes, assigned when a node is constructed or loaded."""
    INPUT = "INPUT"
    OUTPUT = "OUTPUT"
    OTHER = "OTHER"


@dataclass(frozen=True, slots=True)
class NodeTypes:
    """
    Mapping between stored node type tags and NodeKind.

    Only the two configured tags are recognised; every other tag is OTHER.
    """
    input_type: str
    output_type: str

    def classify(self, type_tag: str | None) -> NodeKind:
        if type_tag == self.input_type:
            return NodeKind.INPUT
        if type_tag == self.output_type:
            return NodeKind.OUTPUT
        return NodeKind.OTHER

    def tag_for(self, kind: NodeKind) -> str | None:
        if kind is NodeKind.INPUT:
            return self.input_type
        if kind is NodeKind.OUTPUT:
            return self.output_type
        return None

    @classmethod
    def from_settings(cls, settings: Any) -> NodeTypes:
        """Build from a LinkageSettings-like object."""
        return cls(input_type=settings.input_node_type, output_type=settings.output_node_type)


@dataclass(slots=True)
class Chain:
    tenant_id: str
    name: str
    kind: ChainKind = ChainKind.CORE
    id: Optional[str] = None
    root: bool = False
    edge_template_root: bool = False
    auto_assign_to_edge: bool = False


@dataclass(slots=True)
class Node:
    """
    A processing node in a chain.

    For OUTPUT nodes ``name`` is the exported label. For INPUT nodes
    ``configuration`` encodes the id of the invoked chain.
    """
    name: str
    kind: NodeKind = NodeKind.OTHER
    id: Optional[str] = None
    chain_id: Optional[str] = None
    type: str = ""
    configuration: Any = field(default_factory=dict)

    @property
    def is_input(self) -> bool:
        return self.kind is NodeKind.INPUT

    @property
    def is_output(self) -> bool:
        return self.kind is NodeKind.OUTPUT


@dataclass(frozen=True, slots=True)
class Relation:
    """Directed labeled edge between two nodes of one chain; ``type`` is the label."""
    from_id: str
    to_id: str
    type: str


@dataclass(frozen=True, slots=True)
class Edge:
    """Edge device a chain can be assigned to."""
    id: str
    name: str = ""


@dataclass(slots=True)
class ChainMetadata:
    chain_id: Optional[str] = None
    nodes: List[Node] = field(default_factory=list)
    relations: List[Relation] = field(default_factory=list)
    first_node_id: Optional[str] = None

    def node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[Relation]:
        return [r for r in self.relations if r.from_id == node_id]

    def output_nodes(self) -> Iterator[Node]:
        return (n for n in self.nodes if n.is_output)

    def validate(self) -> None:
        """
        Raise ValueError when node ids repeat, or when a relation or the
        first node points outside the node set.
        """
        ids: Dict[str, Node] = {}
        for node in self.nodes:
            if node.id is None:
                continue
            if node.id in ids:
                raise ValueError(f"Duplicate node id {node.id!r} in chain {self.chain_id!r}")
            ids[node.id] = node

        for rel in self.relations:
            if rel.from_id not in ids or rel.to_id not in ids:
                raise ValueError(
                    f"Relation {rel.from_id!r} -[{rel.type}]-> {rel.to_id!r} "
                    f"references an unknown node in chain {self.chain_id!r}"
                )
        if self.first_node_id is not None and self.first_node_id not in ids:
            raise ValueError(
                f"First node {self.first_node_id!r} is not part of chain {self.chain_id!r}"
            )


@dataclass(frozen=True, slots=True)
class NodeUpdate:
    """The same node id before and after a metadata save."""
    old: Node
    new: Node


@dataclass(slots=True)
class MetadataUpdateResult:
    success: bool
    updated_nodes: List[NodeUpdate] = field(default_factory=list)

    @property
    def old_nodes(self) -> List[Node]:
        return [u.old for u in self.updated_nodes]

    @property
    def new_nodes(self) -> List[Node]:
        return [u.new for u in self.updated_nodes]


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """One INPUT node that invokes a chain, with the labels on its outgoing relations."""
    node_id: str
    node_name: str
    chain_id: str
    chain_name: str
    labels: frozenset[str]


def pair_by_id(old_nodes: Sequence[Node], new_nodes: Sequence[Node]) -> List[NodeUpdate]:
    """Pair up nodes present under the same id in both sequences, in ``new_nodes`` order."""
    before: Mapping[str, Node] = {n.id: n for n in old_nodes if n.id is not None}
    return [
        NodeUpdate(old=before[n.id], new=n)
        for n in new_nodes
        if n.id is not None and n.id in before
    ]
