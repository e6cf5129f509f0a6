import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.campusvoice.constants import AUDIT_TYPES
from app.campusvoice.models import AuditEvent, User


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    audit_type: str = "system",
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.
    """
    if audit_type not in AUDIT_TYPES:
        raise ValueError(f"Unknown audit type: {audit_type}")
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        audit_type=audit_type,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if in_request else None,
    )
    s.add(ev)
    return ev


def serialize_event(ev: AuditEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "created_at": ev.created_at.isoformat() if ev.created_at else None,
        "request_id": ev.request_id,
        "actor_email": ev.actor_user_email,
        "action": ev.action,
        "type": ev.audit_type,
        "entity_type": ev.entity_type,
        "entity_id": ev.entity_id,
        "reason": ev.reason,
        "details": json.loads(ev.metadata_json) if ev.metadata_json else None,
    }
