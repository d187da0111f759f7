from __future__ import annotations

"""
Chain lifecycle operations with cross-chain link maintenance.

Every mutating operation runs inside the same envelope:

- attempt the storage mutation;
- on success broadcast lifecycle events (CORE chains only) and emit one
  notification describing the result;
- on failure emit one notification carrying the attempted entity and the
  cause, then raise LinkageError to the caller.
"""

from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Iterator, List, Optional, Set, TypeVar

from .collaborators import Broadcaster, ChainStore, EdgeNotifier, MetadataFactory, Notifier
from .events import ActionType, EdgeEventAction, LifecycleEvent, Notification
from .labels import OutputLabelResolver
from .logs import getLogger
from .model import Chain, ChainKind, ChainMetadata, Edge, UsageRecord
from .relabel import RelabelEngine
from .usage import UsageIndex

logger = getLogger(__name__)

T = TypeVar("T")


class LinkageError(Exception):
    """Failure of a chain operation; the original exception is in ``cause``."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class NotFoundError(LinkageError):
    """A collaborator reported an entity as absent."""
    pass


def _require(value: Optional[T], what: str) -> T:
    if value is None:
        raise NotFoundError(f"{what} not found")
    return value


class LinkageService:
    """
    Orchestrates chain lifecycle operations.

    Storage, cluster broadcast, audit notification and edge sync are
    injected collaborators; the label resolver, usage index and relabel
    engine are built on top of the store unless given explicitly.
    """

    def __init__(
        self,
        store: ChainStore,
        broadcaster: Broadcaster,
        notifier: Notifier,
        edge_notifier: EdgeNotifier,
        *,
        resolver: Optional[OutputLabelResolver] = None,
        usage_index: Optional[UsageIndex] = None,
        relabel: Optional[RelabelEngine] = None,
        default_metadata: Optional[MetadataFactory] = None,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._notifier = notifier
        self._edge_notifier = edge_notifier
        self._resolver = resolver or OutputLabelResolver(store)
        self._usage_index = usage_index or UsageIndex(store)
        self._relabel = relabel or RelabelEngine(store, self._usage_index)
        self._default_metadata = default_metadata

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def output_labels(self, tenant_id: str, chain_id: str) -> List[str]:
        return self._resolver.output_labels(tenant_id, chain_id)

    def usages(self, tenant_id: str, chain_id: str) -> List[UsageRecord]:
        return self._usage_index.usages_of(tenant_id, chain_id)

    # ------------------------------------------------------------------ #
    # Chain lifecycle
    # ------------------------------------------------------------------ #

    def save(self, chain: Chain) -> Chain:
        """Create (no id) or update a chain."""
        action = ActionType.ADDED if chain.id is None else ActionType.UPDATED
        with self._envelope(chain.tenant_id, action, before=chain):
            saved = _require(self._store.save_chain(chain), "Saved chain")
            event = LifecycleEvent.CREATED if action is ActionType.ADDED else LifecycleEvent.UPDATED
            self._broadcast(saved, event)

        self._notify_success(
            saved,
            action,
            before=chain,
            send_to_edge=saved.kind is ChainKind.EDGE and action is ActionType.UPDATED,
        )
        return saved

    def save_default(self, tenant_id: str, name: str) -> Chain:
        """Create a CORE chain by name, seeded by the default metadata factory if any."""
        attempted = Chain(tenant_id=tenant_id, name=name, kind=ChainKind.CORE)
        with self._envelope(tenant_id, ActionType.ADDED, before=attempted):
            saved = _require(self._store.save_chain(attempted), "Saved chain")
            if self._default_metadata is not None:
                metadata = replace(self._default_metadata(saved), chain_id=saved.id)
                result = self._store.save_metadata(tenant_id, metadata)
                if not result.success:
                    raise LinkageError(f"Failed to save default metadata of chain {saved.id}")
            self._broadcast(saved, LifecycleEvent.CREATED)

        self._notify_success(saved, ActionType.ADDED, before=attempted)
        return saved

    def delete(self, chain: Chain) -> None:
        tenant_id = chain.tenant_id
        chain_id = chain.id
        with self._envelope(tenant_id, ActionType.DELETED, before=chain, entity_id=chain_id):
            chain_id = _require(chain_id, "Chain id")
            # Collected first: once deleted, the chain reads as a dangling reference.
            referencing = self._store.find_referencing_nodes(tenant_id, chain_id)
            referencing_ids = {n.chain_id for n in referencing if n.chain_id is not None}

            related_edge_ids: List[str] = []
            if chain.kind is ChainKind.EDGE:
                related_edge_ids = list(self._store.find_edge_ids_for_chain(tenant_id, chain_id))

            self._store.delete_chain(tenant_id, chain_id)

            referencing_ids.discard(chain_id)
            if chain.kind is ChainKind.CORE:
                for ref_id in sorted(referencing_ids):
                    self._broadcaster.broadcast(tenant_id, ref_id, LifecycleEvent.UPDATED)
                self._broadcaster.broadcast(tenant_id, chain_id, LifecycleEvent.DELETED)

        self._notify(
            Notification(
                tenant_id=tenant_id,
                action=ActionType.DELETED,
                success=True,
                entity_id=chain_id,
                before=chain,
                related_edge_ids=tuple(related_edge_ids),
            )
        )

    def set_root(self, chain: Chain) -> Chain:
        tenant_id = chain.tenant_id
        chain_id = chain.id
        with self._envelope(tenant_id, ActionType.UPDATED, before=chain, entity_id=chain_id):
            chain_id = _require(chain_id, "Chain id")
            previous = self._store.get_root_chain(tenant_id)
            self._store.set_root_chain(tenant_id, chain_id)

            reloaded_previous: Optional[Chain] = None
            if previous is not None and previous.id != chain_id:
                reloaded_previous = _require(
                    self._store.find_chain_by_id(tenant_id, previous.id),
                    f"Previous root chain {previous.id}",
                )
                self._broadcast(reloaded_previous, LifecycleEvent.UPDATED)

            root = _require(self._store.find_chain_by_id(tenant_id, chain_id), f"Chain {chain_id}")
            self._broadcast(root, LifecycleEvent.UPDATED)

        if reloaded_previous is not None:
            self._notify_success(reloaded_previous, ActionType.UPDATED, before=previous)
        self._notify_success(root, ActionType.UPDATED, before=chain)
        return root

    def save_metadata(
        self,
        chain: Chain,
        metadata: ChainMetadata,
        update_related: bool = False,
    ) -> ChainMetadata:
        """
        Persist a chain's metadata and, if ``update_related``, rename the
        links of chains that consume this chain's output labels.
        """
        tenant_id = chain.tenant_id
        chain_id = chain.id
        if metadata.chain_id is None:
            metadata = replace(metadata, chain_id=chain_id)

        with self._envelope(
            tenant_id, ActionType.UPDATED, before=chain, entity_id=chain_id, metadata=metadata
        ):
            chain_id = _require(chain_id, "Chain id")
            if metadata.chain_id != chain_id:
                raise LinkageError(
                    f"Metadata of chain {metadata.chain_id} can't be saved as chain {chain_id}"
                )
            result = self._store.save_metadata(tenant_id, metadata)
            if not result.success:
                raise LinkageError(f"Failed to save metadata of chain {chain_id}")

            affected_ids: Set[str] = set()
            if update_related:
                affected_ids = self._relabel.update_related(tenant_id, chain_id, result)
            affected_ids.discard(chain_id)

            affected = [
                _require(self._store.find_chain_by_id(tenant_id, cid), f"Related chain {cid}")
                for cid in sorted(affected_ids)
            ]
            saved = _require(
                self._store.load_metadata(tenant_id, chain_id),
                f"Metadata of chain {chain_id}",
            )

            if chain.kind is ChainKind.CORE:
                self._broadcaster.broadcast(tenant_id, chain_id, LifecycleEvent.UPDATED)
                for related in affected:
                    self._broadcaster.broadcast(tenant_id, related.id, LifecycleEvent.UPDATED)

        if chain.kind is ChainKind.EDGE:
            self._edge_notifier.send(tenant_id, chain_id, EdgeEventAction.UPDATED)
        else:
            self._notify_success(chain, ActionType.UPDATED, before=chain, metadata=saved)

        for related in affected:
            if chain.kind is ChainKind.EDGE:
                self._edge_notifier.send(tenant_id, related.id, EdgeEventAction.UPDATED)
            else:
                related_metadata = self._store.load_metadata(tenant_id, related.id)
                if related_metadata is None:
                    logger.warning(
                        "[%s][%s] Related chain %s vanished before notification",
                        tenant_id, chain_id, related.id,
                    )
                    continue
                self._notify_success(related, ActionType.UPDATED, metadata=related_metadata)
        return saved

    # ------------------------------------------------------------------ #
    # Edge assignment and flags
    # ------------------------------------------------------------------ #

    def assign_to_edge(self, chain: Chain, edge: Edge) -> Chain:
        return self._edge_assignment(chain, edge, ActionType.ASSIGNED_TO_EDGE)

    def unassign_from_edge(self, chain: Chain, edge: Edge) -> Chain:
        return self._edge_assignment(chain, edge, ActionType.UNASSIGNED_FROM_EDGE)

    def set_edge_template_root(self, chain: Chain) -> Chain:
        return self._set_flag(chain, self._store.set_edge_template_root)

    def set_auto_assign_to_edge(self, chain: Chain) -> Chain:
        return self._set_flag(chain, self._store.set_auto_assign_to_edge)

    def unset_auto_assign_to_edge(self, chain: Chain) -> Chain:
        return self._set_flag(chain, self._store.unset_auto_assign_to_edge)

    def _edge_assignment(self, chain: Chain, edge: Edge, action: ActionType) -> Chain:
        tenant_id = chain.tenant_id
        chain_id = chain.id
        extra = {"chain_id": str(chain_id), "edge_id": edge.id}
        with self._envelope(tenant_id, action, before=chain, entity_id=chain_id, extra=extra):
            chain_id = _require(chain_id, "Chain id")
            if action is ActionType.ASSIGNED_TO_EDGE:
                saved = self._store.assign_to_edge(tenant_id, chain_id, edge.id)
            else:
                saved = self._store.unassign_from_edge(tenant_id, chain_id, edge.id)
            saved = _require(saved, f"Chain {chain_id}")

        self._notify(
            Notification(
                tenant_id=tenant_id,
                action=action,
                success=True,
                entity_id=chain_id,
                before=chain,
                after=saved,
                edge_id=edge.id,
                edge_name=edge.name,
                extra=extra,
            )
        )
        return saved

    def _set_flag(self, chain: Chain, mutation: Callable[[str, str], object]) -> Chain:
        tenant_id = chain.tenant_id
        chain_id = chain.id
        with self._envelope(tenant_id, ActionType.UPDATED, before=chain, entity_id=chain_id):
            chain_id = _require(chain_id, "Chain id")
            mutation(tenant_id, chain_id)
            saved = _require(self._store.find_chain_by_id(tenant_id, chain_id), f"Chain {chain_id}")

        self._notify_success(saved, ActionType.UPDATED, before=chain)
        return saved

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    @contextmanager
    def _envelope(
        self,
        tenant_id: str,
        action: ActionType,
        *,
        before: object = None,
        entity_id: Optional[str] = None,
        metadata: object = None,
        extra: Optional[dict[str, str]] = None,
    ) -> Iterator[None]:
        try:
            yield
        except Exception as exc:
            logger.warning(
                "[%s][%s] Chain operation %s failed: %r", tenant_id, entity_id, action.value, exc
            )
            self._notify(
                Notification(
                    tenant_id=tenant_id,
                    action=action,
                    success=False,
                    entity_id=entity_id,
                    before=before,
                    cause=exc,
                    metadata=metadata,
                    extra=dict(extra or {}),
                )
            )
            if isinstance(exc, LinkageError):
                raise
            raise LinkageError(f"Chain operation {action.value} failed: {exc}", cause=exc) from exc

    def _broadcast(self, chain: Chain, event: LifecycleEvent) -> None:
        if chain.kind is ChainKind.CORE and chain.id is not None:
            self._broadcaster.broadcast(chain.tenant_id, chain.id, event)

    def _notify_success(
        self,
        chain: Chain,
        action: ActionType,
        *,
        before: Optional[Chain] = None,
        metadata: object = None,
        send_to_edge: bool = False,
    ) -> None:
        self._notify(
            Notification(
                tenant_id=chain.tenant_id,
                action=action,
                success=True,
                entity_id=chain.id,
                before=before,
                after=chain,
                metadata=metadata,
                send_to_edge=send_to_edge,
            )
        )

    def _notify(self, notification: Notification) -> None:
        self._notifier.notify(notification)
