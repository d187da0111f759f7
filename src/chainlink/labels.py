from __future__ import annotations

from typing import Iterable, List, Optional

from .collaborators import ChainStore
from .logs import getLogger
from .model import Node, NodeKind

logger = getLogger(__name__)


def is_output(node: Optional[Node]) -> bool:
    return node is not None and node.kind is NodeKind.OUTPUT


def is_input(node: Optional[Node]) -> bool:
    return node is not None and node.kind is NodeKind.INPUT


def output_labels_of(nodes: Iterable[Node]) -> List[str]:
    """Sorted, duplicate-free names of the OUTPUT nodes in ``nodes``."""
    return sorted({n.name for n in nodes if is_output(n)})


class OutputLabelResolver:
    """Reads the exported output labels of a chain from storage."""

    def __init__(self, store: ChainStore) -> None:
        self._store = store

    is_output = staticmethod(is_output)
    is_input = staticmethod(is_input)

    def output_labels(self, tenant_id: str, chain_id: str) -> List[str]:
        """
        Return the labels a chain exports, sorted lexicographically.

        Several OUTPUT nodes may share a name; each label is listed once.
        A chain without metadata exports nothing.
        """
        metadata = self._store.load_metadata(tenant_id, chain_id)
        if metadata is None:
            logger.debug("[%s][%s] No metadata, no output labels", tenant_id, chain_id)
            return []
        return output_labels_of(metadata.nodes)
