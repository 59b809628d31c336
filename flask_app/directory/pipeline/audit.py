"""Audit sink for directory state transitions.

Events are added to the caller's session and committed together with the
state change they describe, so an audit row exists iff the transition did.
"""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from flask_app.models import AuditLog, db

SOURCE_SYNC_COMPLETED = "source.sync.completed"
SOURCE_SYNC_FAILED = "source.sync.failed"
APPROVAL_REQUESTED = "approval.requested"
APPROVAL_APPROVED = "approval.approved"
APPROVAL_REJECTED = "approval.rejected"
APPROVAL_EXPIRED = "approval.expired"
APPROVAL_CANCELLED = "approval.cancelled"
APPROVAL_APPLIED = "approval.applied"
PREVIEW_APPLIED = "preview.applied"


class AuditSink:
    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def record(
        self,
        *,
        action: str,
        entity_type: str,
        entity_id: int | str,
        actor_user_id: int | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            actor_user_id=actor_user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            metadata_json=dict(metadata or {}),
        )
        self.session.add(entry)
        return entry

    def history(self, entity_type: str, entity_id: int | str) -> list[AuditLog]:
        return (
            self.session.query(AuditLog)
            .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
            .order_by(AuditLog.id.asc())
            .all()
        )
