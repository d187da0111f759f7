from __future__ import annotations

"""
Propagation of output label renames into the chains that invoke a chain.

Two steps:

1. ``compute_rename_map`` derives ``old label -> new label`` from the nodes
   of a chain before and after a metadata save. Labels renamed to two
   different names are "confused" and dropped; renames whose old label is
   still exported afterwards are dropped as well.
2. ``apply_rename_map`` rewrites the matching outgoing relations of every
   INPUT node that invokes the chain.

Relations are rewritten as delete followed by create. There is no
transaction across chains: a failure between the two calls leaves the
relation deleted.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Mapping, Sequence, Set

from .collaborators import ChainStore
from .labels import is_output
from .logs import getLogger
from .model import MetadataUpdateResult, Node, pair_by_id
from .usage import UsageIndex

logger = getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RenamePlan:
    renames: Mapping[str, str] = field(default_factory=dict)
    old_labels: FrozenSet[str] = frozenset()
    new_labels: FrozenSet[str] = frozenset()
    confused: FrozenSet[str] = frozenset()

    @property
    def needs_propagation(self) -> bool:
        return bool(self.renames) and self.old_labels != self.new_labels


def compute_rename_map(old_nodes: Sequence[Node], new_nodes: Sequence[Node]) -> RenamePlan:
    """
    Build the rename plan for nodes paired by id across ``old_nodes`` and
    ``new_nodes``. Only pairs whose new node is OUTPUT count.
    """
    old_labels: Set[str] = set()
    new_labels: Set[str] = set()
    confused: Set[str] = set()
    renames: Dict[str, str] = {}

    for update in pair_by_id(old_nodes, new_nodes):
        if not is_output(update.new):
            continue
        old_label, new_label = update.old.name, update.new.name
        old_labels.add(old_label)
        new_labels.add(new_label)
        if old_label == new_label:
            continue
        proposed = renames.get(old_label)
        if proposed is not None and proposed != new_label:
            confused.add(old_label)
            logger.warning(
                "Can't automatically rename label [%s] to [%s] due to conflict with [%s]",
                old_label, new_label, proposed,
            )
        else:
            renames[old_label] = new_label

    for label in confused:
        renames.pop(label, None)
    # A label still exported after the save keeps its links.
    for label in new_labels:
        renames.pop(label, None)

    if old_labels == new_labels:
        renames = {}

    return RenamePlan(
        renames=renames,
        old_labels=frozenset(old_labels),
        new_labels=frozenset(new_labels),
        confused=frozenset(confused),
    )


class RelabelEngine:
    """Computes and applies label renames across referencing chains."""

    def __init__(self, store: ChainStore, usage_index: UsageIndex) -> None:
        self._store = store
        self._usage_index = usage_index

    compute_rename_map = staticmethod(compute_rename_map)

    def apply_rename_map(
        self,
        tenant_id: str,
        chain_id: str,
        renames: Mapping[str, str],
    ) -> Set[str]:
        """
        Rewrite relations labeled with an old label in every chain that
        invokes ``chain_id``. Returns the ids of the chains touched.
        """
        affected: Set[str] = set()
        if not renames:
            return affected

        for usage in self._usage_index.usages_of(tenant_id, chain_id):
            for old_label, new_label in renames.items():
                if old_label not in usage.labels:
                    continue
                affected.add(usage.chain_id)
                self._rename_outgoing(tenant_id, usage.node_id, old_label, new_label)

        logger.info(
            "[%s][%s] Renamed labels %s in %d related chain(s)",
            tenant_id, chain_id, dict(renames), len(affected),
        )
        return affected

    def update_related(
        self,
        tenant_id: str,
        chain_id: str,
        result: MetadataUpdateResult,
    ) -> Set[str]:
        """Compute the rename plan from a save result and apply it."""
        logger.debug("[%s][%s] Going to update links in related chains", tenant_id, chain_id)
        if not result.updated_nodes:
            return set()

        plan = compute_rename_map(result.old_nodes, result.new_nodes)
        if plan.confused:
            logger.warning(
                "[%s][%s] Labels %s were renamed ambiguously and are left unchanged",
                tenant_id, chain_id, sorted(plan.confused),
            )
        if not plan.needs_propagation:
            return set()
        return self.apply_rename_map(tenant_id, chain_id, plan.renames)

    def _rename_outgoing(self, tenant_id: str, node_id: str, old_label: str, new_label: str) -> None:
        for relation in self._store.get_node_relations(tenant_id, node_id):
            if relation.type != old_label:
                continue
            self._store.delete_relation(tenant_id, relation)
            self._store.save_relation(tenant_id, replace(relation, type=new_label))
