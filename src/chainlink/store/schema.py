from __future__ import annotations

from sqlalchemy import (
    MetaData,
    Table,
    Column,
    Boolean,
    String,
    Text,
    ForeignKey,
    Index,
    text,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

chains = Table(
    "chains",
    metadata,
    Column("id", String(36), primary_key=True),  # UUID as string
    Column("tenant_id", String(36), nullable=False, index=True),
    Column("kind", String(16), nullable=False),
    Column("name", String, nullable=False),
    Column("root", Boolean, nullable=False, default=False),
    Column("edge_template_root", Boolean, nullable=False, default=False),
    Column("auto_assign_to_edge", Boolean, nullable=False, default=False),
    Column("first_node_id", String(36), nullable=True),
)

nodes = Table(
    "nodes",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("chain_id", String(36), ForeignKey("chains.id"), nullable=False, index=True),
    Column("tenant_id", String(36), nullable=False),
    Column("type", String, nullable=False),
    Column("name", String, nullable=False),
    Column("configuration", Text, nullable=True),  # JSON text
    Index("ix_nodes_tenant_type", "tenant_id", "type"),
)

relations = Table(
    "relations",
    metadata,
    Column("from_id", String(36), ForeignKey("nodes.id"), primary_key=True),
    Column("to_id", String(36), ForeignKey("nodes.id"), primary_key=True),
    Column("type", String, primary_key=True),
    Column("tenant_id", String(36), nullable=False),
)

edge_chains = Table(
    "edge_chains",
    metadata,
    Column("edge_id", String(36), primary_key=True),
    Column("chain_id", String(36), ForeignKey("chains.id"), primary_key=True),
    Column("tenant_id", String(36), nullable=False),
)


def create_chain_schema(engine: Engine, schema: str | None = None) -> None:
    """
    Create the chain tables.

    - For PostgreSQL with ``schema``: CREATE SCHEMA IF NOT EXISTS first.
    - Otherwise rely on metadata.create_all in the default schema.
    """
    with engine.begin() as conn:
        if schema and engine.dialect.name == "postgresql":
            conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
            conn.execute(text(f'SET search_path TO "{schema}"'))
        metadata.create_all(conn)
