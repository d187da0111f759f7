from __future__ import annotations

"""Audit notifier writing one log record per mutating chain operation."""

import logging

from .events import Notification
from .logs import getLogger

AUDIT_LOGGER = "chainlink.audit"


class AuditLogNotifier:
    """Notifier that renders Notifications into the audit logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or getLogger(AUDIT_LOGGER)

    def notify(self, notification: Notification) -> None:
        n = notification
        if n.success:
            self._logger.info(
                "[%s][%s] %s succeeded%s%s",
                n.tenant_id,
                n.entity_id,
                n.action.value,
                f" edge={n.edge_id}" if n.edge_id else "",
                f" related_edges={list(n.related_edge_ids)}" if n.related_edge_ids else "",
            )
        else:
            self._logger.warning(
                "[%s][%s] %s failed: %r",
                n.tenant_id,
                n.entity_id,
                n.action.value,
                n.cause,
            )
