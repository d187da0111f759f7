from __future__ import annotations

"""
Discovery of the chains that invoke a given chain through INPUT nodes.
"""

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .collaborators import ChainStore
from .logs import getLogger
from .model import Node, NodeKind, UsageRecord

logger = getLogger(__name__)


class InputNodeConfiguration(BaseModel):
    """The part of an INPUT node configuration that names the invoked chain."""

    model_config = ConfigDict(extra="ignore")

    chain_id: str = Field(validation_alias=AliasChoices("chainId", "chain_id"))


def decode_input_configuration(configuration: Any) -> InputNodeConfiguration:
    """
    Decode an INPUT node configuration given as a mapping or JSON text.

    Raises ValidationError (or ValueError for undecodable text).
    """
    if isinstance(configuration, (str, bytes, bytearray)):
        return InputNodeConfiguration.model_validate_json(configuration)
    return InputNodeConfiguration.model_validate(configuration)


def references_chain(node: Node, chain_id: str) -> bool:
    """True when ``node`` decodes as an INPUT configuration pointing at ``chain_id``."""
    try:
        config = decode_input_configuration(node.configuration)
    except (ValidationError, ValueError):
        return False
    return config.chain_id == chain_id


class UsageIndex:
    """
    Finds every INPUT node that references a chain, together with the labels
    on that node's outgoing relations.

    Nothing is cached between calls; chain names are memoized only for the
    duration of a single ``usages_of`` call.
    """

    def __init__(self, store: ChainStore) -> None:
        self._store = store

    def usages_of(self, tenant_id: str, chain_id: str) -> List[UsageRecord]:
        candidates = self._store.find_nodes_by_type(tenant_id, NodeKind.INPUT, chain_id)
        chain_names: Dict[str, Optional[str]] = {}

        usages: List[UsageRecord] = []
        for node in candidates:
            if not self._points_at(tenant_id, chain_id, node):
                continue
            try:
                usage = self._usage_for(tenant_id, node, chain_names)
            except Exception as exc:
                logger.warning(
                    "[%s][%s] Skipping node %s: failed to resolve its usage: %r",
                    tenant_id, chain_id, node.id, exc,
                )
                continue
            if usage is not None:
                usages.append(usage)

        usages.sort(key=lambda u: (u.chain_name, u.node_name))
        return usages

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _points_at(tenant_id: str, chain_id: str, node: Node) -> bool:
        # The storage search matches on raw configuration text; decode to be sure.
        try:
            config = decode_input_configuration(node.configuration)
        except (ValidationError, ValueError) as exc:
            logger.warning(
                "[%s][%s] Failed to decode configuration of input node %s: %s",
                tenant_id, chain_id, node.id, exc,
            )
            return False
        if config.chain_id != chain_id:
            logger.warning(
                "[%s][%s] Input node %s references chain %s, not this chain; skipping",
                tenant_id, chain_id, node.id, config.chain_id,
            )
            return False
        return True

    def _usage_for(
        self,
        tenant_id: str,
        node: Node,
        chain_names: Dict[str, Optional[str]],
    ) -> Optional[UsageRecord]:
        if node.id is None or node.chain_id is None:
            return None

        relations = self._store.get_node_relations(tenant_id, node.id)
        labels = frozenset(r.type for r in relations or ())
        if not labels:
            return None

        if node.chain_id not in chain_names:
            chain = self._store.find_chain_by_id(tenant_id, node.chain_id)
            chain_names[node.chain_id] = chain.name if chain is not None else None
        chain_name = chain_names[node.chain_id]
        if chain_name is None:
            logger.warning(
                "[%s] Input node %s belongs to missing chain %s; skipping",
                tenant_id, node.id, node.chain_id,
            )
            return None

        return UsageRecord(
            node_id=node.id,
            node_name=node.name,
            chain_id=node.chain_id,
            chain_name=chain_name,
            labels=labels,
        )
