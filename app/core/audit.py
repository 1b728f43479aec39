"""Audit trail for payment events that need manual follow-up."""

from typing import Any

from app.models.audit_log import AuditLog


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    """Append to audit_logs collection. user_id is None for orphaned events."""
    entry = AuditLog(
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    )
    await entry.insert()
    return entry
