from __future__ import annotations

import json
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import and_, create_engine, delete, insert, literal, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from ..config import AppSettings
from ..logs import getLogger
from ..model import (
    Chain,
    ChainKind,
    ChainMetadata,
    MetadataUpdateResult,
    Node,
    NodeKind,
    NodeTypes,
    NodeUpdate,
    Relation,
)
from ..usage import references_chain
from .schema import chains, edge_chains, nodes, relations

logger = getLogger(__name__)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _chain_from_row(row: Mapping[str, Any]) -> Chain:
    return Chain(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        name=str(row["name"]),
        kind=ChainKind(row["kind"]),
        root=bool(row["root"]),
        edge_template_root=bool(row["edge_template_root"]),
        auto_assign_to_edge=bool(row["auto_assign_to_edge"]),
    )


def _decode_configuration(raw: Optional[str]) -> Any:
    if raw is None:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        # Left as text; consumers that need it decoded will reject it.
        return raw


def _encode_configuration(configuration: Any) -> Optional[str]:
    if configuration is None:
        return None
    if isinstance(configuration, str):
        return configuration
    return json.dumps(configuration, sort_keys=True)


def _relation_from_row(row: Mapping[str, Any]) -> Relation:
    return Relation(from_id=str(row["from_id"]), to_id=str(row["to_id"]), type=str(row["type"]))


class SqlChainStore:
    """
    ChainStore on top of SQLAlchemy Core tables.

    Each public method runs in its own transaction. Node type tags are
    classified into NodeKind on load and derived from NodeKind on save.
    """

    def __init__(self, sessions: sessionmaker, node_types: NodeTypes) -> None:
        self._sessions = sessions
        self._node_types = node_types

    @property
    def node_types(self) -> NodeTypes:
        return self._node_types

    def _node_from_row(self, row: Mapping[str, Any]) -> Node:
        return Node(
            id=str(row["id"]),
            chain_id=str(row["chain_id"]),
            name=str(row["name"]),
            type=str(row["type"]),
            kind=self._node_types.classify(row["type"]),
            configuration=_decode_configuration(row["configuration"]),
        )

    # ------------------------------------------------------------------ #
    # Chains
    # ------------------------------------------------------------------ #

    def save_chain(self, chain: Chain) -> Chain:
        saved = replace(chain, id=chain.id or str(uuid.uuid4()))
        values = {
            "tenant_id": saved.tenant_id,
            "kind": saved.kind.value,
            "name": saved.name,
            "root": saved.root,
            "edge_template_root": saved.edge_template_root,
            "auto_assign_to_edge": saved.auto_assign_to_edge,
        }
        with self._sessions.begin() as session:
            exists = self._chain_row(session, saved.tenant_id, saved.id) is not None
            if exists:
                session.execute(update(chains).where(chains.c.id == saved.id).values(**values))
            else:
                session.execute(insert(chains).values(id=saved.id, **values))
        logger.debug("[%s][%s] Chain %s", saved.tenant_id, saved.id, "updated" if exists else "created")
        return saved

    def find_chain_by_id(self, tenant_id: str, chain_id: str) -> Optional[Chain]:
        with self._sessions() as session:
            row = self._chain_row(session, tenant_id, chain_id)
        return _chain_from_row(row) if row is not None else None

    def delete_chain(self, tenant_id: str, chain_id: str) -> None:
        with self._sessions.begin() as session:
            node_ids = self._node_ids(session, chain_id)
            if node_ids:
                session.execute(
                    delete(relations).where(
                        or_(relations.c.from_id.in_(node_ids), relations.c.to_id.in_(node_ids))
                    )
                )
                session.execute(delete(nodes).where(nodes.c.chain_id == literal(chain_id)))
            session.execute(delete(edge_chains).where(edge_chains.c.chain_id == literal(chain_id)))
            session.execute(
                delete(chains).where(
                    and_(chains.c.id == literal(chain_id), chains.c.tenant_id == literal(tenant_id))
                )
            )

    def get_root_chain(self, tenant_id: str) -> Optional[Chain]:
        with self._sessions() as session:
            row = session.execute(
                select(chains).where(
                    chains.c.tenant_id == literal(tenant_id),
                    chains.c.root.is_(True),
                    chains.c.kind == literal(ChainKind.CORE.value),
                )
            ).mappings().first()
        return _chain_from_row(row) if row is not None else None

    def set_root_chain(self, tenant_id: str, chain_id: str) -> bool:
        with self._sessions.begin() as session:
            row = self._require_chain(session, tenant_id, chain_id)
            if row["root"]:
                return False
            session.execute(
                update(chains)
                .where(chains.c.tenant_id == literal(tenant_id), chains.c.root.is_(True))
                .values(root=False)
            )
            session.execute(update(chains).where(chains.c.id == literal(chain_id)).values(root=True))
        return True

    # ------------------------------------------------------------------ #
    # Metadata
    # ------------------------------------------------------------------ #

    def load_metadata(self, tenant_id: str, chain_id: str) -> Optional[ChainMetadata]:
        with self._sessions() as session:
            chain_row = self._chain_row(session, tenant_id, chain_id)
            if chain_row is None:
                return None
            node_rows = session.execute(
                select(nodes).where(nodes.c.chain_id == literal(chain_id)).order_by(nodes.c.id)
            ).mappings().all()
            node_ids = [r["id"] for r in node_rows]
            rel_rows: Sequence[Mapping[str, Any]] = []
            if node_ids:
                rel_rows = session.execute(
                    select(relations)
                    .where(relations.c.from_id.in_(node_ids))
                    .order_by(relations.c.from_id, relations.c.to_id, relations.c.type)
                ).mappings().all()

        return ChainMetadata(
            chain_id=chain_id,
            nodes=[self._node_from_row(r) for r in node_rows],
            relations=[_relation_from_row(r) for r in rel_rows],
            first_node_id=chain_row["first_node_id"],
        )

    def save_metadata(self, tenant_id: str, metadata: ChainMetadata) -> MetadataUpdateResult:
        """
        Replace nodes and relations of ``metadata.chain_id``.

        Nodes without id get a fresh one. Every node id present before and
        after the save is reported as a NodeUpdate.
        """
        chain_id = metadata.chain_id
        if chain_id is None:
            logger.warning("[%s] Metadata without chain id can't be saved", tenant_id)
            return MetadataUpdateResult(success=False)
        try:
            metadata.validate()
        except ValueError as exc:
            logger.warning("[%s][%s] Invalid metadata: %s", tenant_id, chain_id, exc)
            return MetadataUpdateResult(success=False)

        with self._sessions.begin() as session:
            if self._chain_row(session, tenant_id, chain_id) is None:
                logger.warning("[%s][%s] Metadata for unknown chain", tenant_id, chain_id)
                return MetadataUpdateResult(success=False)

            existing: Dict[str, Node] = {
                r["id"]: self._node_from_row(r)
                for r in session.execute(
                    select(nodes).where(nodes.c.chain_id == literal(chain_id))
                ).mappings()
            }
            stored = [self._prepare_node(n, chain_id) for n in metadata.nodes]
            stored_ids = {n.id for n in stored}

            if existing:
                session.execute(
                    delete(relations).where(
                        or_(
                            relations.c.from_id.in_(list(existing)),
                            relations.c.to_id.in_(list(existing)),
                        )
                    )
                )
            removed = [nid for nid in existing if nid not in stored_ids]
            if removed:
                session.execute(delete(nodes).where(nodes.c.id.in_(removed)))

            for node in stored:
                values = {
                    "chain_id": chain_id,
                    "tenant_id": tenant_id,
                    "type": node.type,
                    "name": node.name,
                    "configuration": _encode_configuration(node.configuration),
                }
                if node.id in existing:
                    session.execute(update(nodes).where(nodes.c.id == literal(node.id)).values(**values))
                else:
                    session.execute(insert(nodes).values(id=node.id, **values))

            unique_relations = list(dict.fromkeys(metadata.relations))
            if unique_relations:
                session.execute(
                    insert(relations),
                    [
                        {"from_id": r.from_id, "to_id": r.to_id, "type": r.type, "tenant_id": tenant_id}
                        for r in unique_relations
                    ],
                )
            session.execute(
                update(chains)
                .where(chains.c.id == literal(chain_id))
                .values(first_node_id=metadata.first_node_id)
            )

        updated = [NodeUpdate(old=existing[n.id], new=n) for n in stored if n.id in existing]
        logger.debug(
            "[%s][%s] Saved metadata: %d node(s), %d updated, %d removed",
            tenant_id, chain_id, len(stored), len(updated), len(removed),
        )
        return MetadataUpdateResult(success=True, updated_nodes=updated)

    def _prepare_node(self, node: Node, chain_id: str) -> Node:
        type_tag = node.type or self._node_types.tag_for(node.kind) or ""
        return replace(
            node,
            id=node.id or str(uuid.uuid4()),
            chain_id=chain_id,
            type=type_tag,
            kind=self._node_types.classify(type_tag),
        )

    # ------------------------------------------------------------------ #
    # Nodes and relations
    # ------------------------------------------------------------------ #

    def find_nodes_by_type(self, tenant_id: str, kind: NodeKind, search: str) -> List[Node]:
        type_tag = self._node_types.tag_for(kind)
        if type_tag is None:
            return []
        with self._sessions() as session:
            rows = session.execute(
                select(nodes)
                .where(
                    nodes.c.tenant_id == literal(tenant_id),
                    nodes.c.type == literal(type_tag),
                    nodes.c.configuration.contains(search, autoescape=True),
                )
                .order_by(nodes.c.id)
            ).mappings().all()
        return [self._node_from_row(r) for r in rows]

    def find_referencing_nodes(self, tenant_id: str, chain_id: str) -> List[Node]:
        return [
            n
            for n in self.find_nodes_by_type(tenant_id, NodeKind.INPUT, chain_id)
            if references_chain(n, chain_id)
        ]

    def get_node_relations(self, tenant_id: str, node_id: str) -> List[Relation]:
        with self._sessions() as session:
            rows = session.execute(
                select(relations)
                .where(
                    relations.c.tenant_id == literal(tenant_id),
                    relations.c.from_id == literal(node_id),
                )
                .order_by(relations.c.to_id, relations.c.type)
            ).mappings().all()
        return [_relation_from_row(r) for r in rows]

    def delete_relation(self, tenant_id: str, relation: Relation) -> None:
        with self._sessions.begin() as session:
            session.execute(delete(relations).where(self._relation_clause(tenant_id, relation)))

    def save_relation(self, tenant_id: str, relation: Relation) -> None:
        with self._sessions.begin() as session:
            exists = session.execute(
                select(relations.c.from_id).where(self._relation_clause(tenant_id, relation))
            ).first()
            if exists is None:
                session.execute(
                    insert(relations).values(
                        from_id=relation.from_id,
                        to_id=relation.to_id,
                        type=relation.type,
                        tenant_id=tenant_id,
                    )
                )

    # ------------------------------------------------------------------ #
    # Edge assignment and flags
    # ------------------------------------------------------------------ #

    def find_edge_ids_for_chain(self, tenant_id: str, chain_id: str) -> List[str]:
        with self._sessions() as session:
            rows = session.execute(
                select(edge_chains.c.edge_id)
                .where(
                    edge_chains.c.tenant_id == literal(tenant_id),
                    edge_chains.c.chain_id == literal(chain_id),
                )
                .order_by(edge_chains.c.edge_id)
            ).scalars().all()
        return [str(r) for r in rows]

    def assign_to_edge(self, tenant_id: str, chain_id: str, edge_id: str) -> Optional[Chain]:
        with self._sessions.begin() as session:
            row = self._require_edge_chain(session, tenant_id, chain_id)
            assigned = session.execute(
                select(edge_chains.c.edge_id).where(
                    edge_chains.c.edge_id == literal(edge_id),
                    edge_chains.c.chain_id == literal(chain_id),
                )
            ).first()
            if assigned is None:
                session.execute(
                    insert(edge_chains).values(edge_id=edge_id, chain_id=chain_id, tenant_id=tenant_id)
                )
        return _chain_from_row(row)

    def unassign_from_edge(self, tenant_id: str, chain_id: str, edge_id: str) -> Optional[Chain]:
        with self._sessions.begin() as session:
            row = self._require_edge_chain(session, tenant_id, chain_id)
            session.execute(
                delete(edge_chains).where(
                    edge_chains.c.edge_id == literal(edge_id),
                    edge_chains.c.chain_id == literal(chain_id),
                )
            )
        return _chain_from_row(row)

    def set_edge_template_root(self, tenant_id: str, chain_id: str) -> bool:
        with self._sessions.begin() as session:
            row = self._require_edge_chain(session, tenant_id, chain_id)
            if row["edge_template_root"]:
                return False
            session.execute(
                update(chains)
                .where(
                    chains.c.tenant_id == literal(tenant_id),
                    chains.c.edge_template_root.is_(True),
                )
                .values(edge_template_root=False)
            )
            session.execute(
                update(chains)
                .where(chains.c.id == literal(chain_id))
                .values(edge_template_root=True, auto_assign_to_edge=True)
            )
        return True

    def set_auto_assign_to_edge(self, tenant_id: str, chain_id: str) -> bool:
        return self._set_auto_assign(tenant_id, chain_id, True)

    def unset_auto_assign_to_edge(self, tenant_id: str, chain_id: str) -> bool:
        return self._set_auto_assign(tenant_id, chain_id, False)

    def _set_auto_assign(self, tenant_id: str, chain_id: str, value: bool) -> bool:
        with self._sessions.begin() as session:
            row = self._require_edge_chain(session, tenant_id, chain_id)
            if bool(row["auto_assign_to_edge"]) == value:
                return False
            session.execute(
                update(chains).where(chains.c.id == literal(chain_id)).values(auto_assign_to_edge=value)
            )
        return True

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _chain_row(session: Session, tenant_id: str, chain_id: str) -> Optional[Mapping[str, Any]]:
        return session.execute(
            select(chains).where(
                chains.c.id == literal(chain_id),
                chains.c.tenant_id == literal(tenant_id),
            )
        ).mappings().first()

    def _require_chain(self, session: Session, tenant_id: str, chain_id: str) -> Mapping[str, Any]:
        row = self._chain_row(session, tenant_id, chain_id)
        if row is None:
            raise KeyError(f"Chain {chain_id!r} not found for tenant {tenant_id!r}")
        return row

    def _require_edge_chain(self, session: Session, tenant_id: str, chain_id: str) -> Mapping[str, Any]:
        row = self._require_chain(session, tenant_id, chain_id)
        if row["kind"] != ChainKind.EDGE.value:
            raise ValueError(f"Chain {chain_id!r} is not an {ChainKind.EDGE.value} chain")
        return row

    @staticmethod
    def _node_ids(session: Session, chain_id: str) -> List[str]:
        return list(
            session.execute(select(nodes.c.id).where(nodes.c.chain_id == literal(chain_id))).scalars()
        )

    @staticmethod
    def _relation_clause(tenant_id: str, relation: Relation):
        return and_(
            relations.c.tenant_id == literal(tenant_id),
            relations.c.from_id == literal(relation.from_id),
            relations.c.to_id == literal(relation.to_id),
            relations.c.type == literal(relation.type),
        )


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def create_store(settings: AppSettings) -> SqlChainStore:
    """Build a SqlChainStore from DatabaseSettings and LinkageSettings."""
    engine = create_engine(
        str(settings.database.url),
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
    )
    sessions = sessionmaker(engine, expire_on_commit=False)
    return SqlChainStore(sessions, NodeTypes.from_settings(settings.linkage))
