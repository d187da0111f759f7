"""
chainlink.store
===============

SQLAlchemy-backed storage collaborator.

Public API:

- SqlChainStore       : ChainStore implementation on SQLAlchemy Core tables.
- create_chain_schema : create the chain tables in a database.
- create_store        : build a SqlChainStore from AppSettings.
"""

from __future__ import annotations

from .schema import create_chain_schema
from .db import SqlChainStore, create_store

__all__ = [
    "SqlChainStore",
    "create_chain_schema",
    "create_store",
]
