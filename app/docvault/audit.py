from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.docvault.models import AuditEvent, User

GENESIS_HASH = "0"


def _event_digest(ev: AuditEvent) -> str:
    payload = json.dumps(
        {
            "created_at": ev.created_at.isoformat(),
            "actor_user_id": ev.actor_user_id,
            "action": ev.action,
            "entity_type": ev.entity_type,
            "entity_id": ev.entity_id,
            "reason": ev.reason,
            "metadata_json": ev.metadata_json,
            "prev_hash": ev.prev_hash,
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _last_hash(s: Session) -> str:
    last = s.query(AuditEvent.event_hash).order_by(AuditEvent.id.desc()).limit(1).scalar()
    return last or GENESIS_HASH


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper. Flushes so the next event can chain onto it.
    """
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    ev = AuditEvent(
        created_at=datetime.utcnow(),
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if in_request else None,
        prev_hash=_last_hash(s),
    )
    ev.event_hash = _event_digest(ev)
    s.add(ev)
    s.flush()
    return ev


def verify_chain(s: Session) -> int | None:
    """
    Walk the audit trail in id order. Returns the id of the first event whose
    link or digest does not match, or None when the chain is intact.
    """
    prev = GENESIS_HASH
    for ev in s.query(AuditEvent).order_by(AuditEvent.id.asc()).yield_per(500):
        if ev.prev_hash != prev or ev.event_hash != _event_digest(ev):
            return ev.id
        prev = ev.event_hash
    return None
