"""Audit logging utilities.

Writes structured JSON lines to a dedicated audit log file and standard logger.
Each event describes a provider-originated state change (donation completed,
dispute updated, subscription synced) or an operator action on disputes.
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

from givingcore.core.config import settings

_logger = logging.getLogger("audit")


def log_audit_event(
    action: str,
    *,
    tenant_id: str | None = None,
    church_id: str | None = None,
    actor_type: str = "webhook",
    target_type: str | None = None,
    target_id: str | None = None,
    status: str = "success",
    **metadata: Any,
) -> None:
    """Record an audit event.

    Parameters:
        action: A machine-readable action key (e.g. 'donation.completed').
        tenant_id / church_id: Owning tenant and church, when known.
        actor_type: 'webhook' | 'system' | 'user'.
        target_type / target_id: The record the action applied to.
        status: 'success' | 'failure'.
        **metadata: Additional context fields (provider, amounts, statuses).
    """
    event = {
        "ts": int(time.time()),
        "action": action,
        "actor_type": actor_type,
        "tenant_id": tenant_id,
        "church_id": church_id,
        "target_type": target_type,
        "target_id": target_id,
        "status": status,
        **metadata,
    }
    line = json.dumps(event, separators=(",", ":"), default=str)
    path = settings.AUDIT_LOG_FILE
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except Exception:  # noqa: BLE001
        _logger.debug("Failed to write audit event to file: %s", event)
    _logger.info(line)


def log_failure(action: str, error: str | None = None, **extra: Any) -> None:
    log_audit_event(action, status="failure", error=error, **extra)
