"""
Approval gate for destructive directory previews.

A ``DeactivationApproval`` starts ``pending`` and moves exactly once to
``approved``, ``rejected``, ``expired`` or ``cancelled``. Every transition is
a compare-and-set ``UPDATE ... WHERE status = PENDING`` so concurrent callers
are linearized by the database; the loser re-reads the row and either sees
its own decision (no-op) or gets ``approval_closed``.

Expiry is lazy: reads and decisions flip overdue pending records to
``expired`` when they touch them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping

from flask import current_app
from sqlalchemy import update
from sqlalchemy.orm import Session

from flask_app.directory.errors import ApprovalClosedError, ApprovalExpiredError, ApprovalNotFoundError
from flask_app.directory.metrics import record_approval_decision
from flask_app.directory.utils import ensure_aware, isoformat, utcnow
from flask_app.models import ApprovalStatus, DeactivationApproval, DirectoryPreview, SourceRun, db

from . import audit as audit_actions
from .audit import AuditSink
from .diff import Scope

TRANSITIONS: Mapping[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset(
        {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.EXPIRED, ApprovalStatus.CANCELLED}
    ),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
    ApprovalStatus.EXPIRED: frozenset(),
    ApprovalStatus.CANCELLED: frozenset(),
}

_AUDIT_ACTIONS = {
    ApprovalStatus.APPROVED: audit_actions.APPROVAL_APPROVED,
    ApprovalStatus.REJECTED: audit_actions.APPROVAL_REJECTED,
    ApprovalStatus.EXPIRED: audit_actions.APPROVAL_EXPIRED,
    ApprovalStatus.CANCELLED: audit_actions.APPROVAL_CANCELLED,
}

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200


def can_transition(current: ApprovalStatus, target: ApprovalStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def coerce_status_filter(value: str | ApprovalStatus | None) -> ApprovalStatus | None:
    """Parse a status filter; ``None``/``all`` means every status."""

    if value is None or isinstance(value, ApprovalStatus):
        return value
    token = str(value).strip().lower()
    if token in ("", "all"):
        return None
    try:
        return ApprovalStatus(token)
    except ValueError as exc:
        raise ValueError(f"Unsupported approval status '{value}'.") from exc


def clamp_limit(limit: int | str | None, *, default: int = DEFAULT_LIST_LIMIT, maximum: int = MAX_LIST_LIMIT) -> int:
    try:
        value = int(limit) if limit is not None else default
    except (TypeError, ValueError):
        value = default
    return max(1, min(value, maximum))


class ApprovalGate:
    """State machine for deactivation approvals."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        audit: AuditSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session: Session = session or db.session
        self.audit = audit or AuditSink(self.session)
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation (called by the run orchestrator inside its own transaction)
    # ------------------------------------------------------------------
    def request(
        self,
        *,
        preview: DirectoryPreview,
        run: SourceRun,
        actor_user_id: int | None,
        now: datetime | None = None,
    ) -> DeactivationApproval:
        """Create a pending approval for ``preview`` without committing."""

        now = now or self.clock()
        candidates = (preview.diff_json or {}).get("deactivation_candidates") or []
        approval = DeactivationApproval(
            preview_id=preview.id,
            source_id=run.source_id,
            source_run_id=run.id,
            school_id=preview.school_id,
            district_id=preview.district_id,
            status=ApprovalStatus.PENDING,
            requested_by_user_id=actor_user_id,
            requested_at=now,
            expires_at=preview.expires_at,
            stats_json=dict(preview.stats_json or {}),
            metadata_json={"source_hash": preview.source_hash, "deactivation_count": len(candidates)},
        )
        self.session.add(approval)
        self.session.flush()
        preview.approval_id = approval.id

        self.audit.record(
            action=audit_actions.APPROVAL_REQUESTED,
            entity_type="approval",
            entity_id=approval.id,
            actor_user_id=actor_user_id,
            metadata={
                "preview_id": preview.id,
                "source_id": run.source_id,
                "source_run_id": run.id,
                "to_deactivate": len(candidates),
            },
        )
        self.cancel_superseded(run.source_id, keep_id=approval.id, now=now)
        return approval

    def cancel_superseded(self, source_id: int, *, keep_id: int, now: datetime | None = None) -> list[int]:
        """
        Cancel older pending approvals of ``source_id``; the caller commits.
        """

        now = now or self.clock()
        stale_ids = [
            row.id
            for row in self.session.query(DeactivationApproval.id)
            .filter(
                DeactivationApproval.source_id == source_id,
                DeactivationApproval.status == ApprovalStatus.PENDING,
                DeactivationApproval.id != keep_id,
            )
            .all()
        ]
        cancelled: list[int] = []
        for approval_id in stale_ids:
            won = self._compare_and_set(
                approval_id,
                ApprovalStatus.CANCELLED,
                decided_at=now,
                decision_reason=f"Superseded by approval {keep_id}.",
            )
            if not won:
                continue
            cancelled.append(approval_id)
            self.audit.record(
                action=audit_actions.APPROVAL_CANCELLED,
                entity_type="approval",
                entity_id=approval_id,
                metadata={"superseded_by": keep_id},
            )
            record_approval_decision(ApprovalStatus.CANCELLED.value)
        return cancelled

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    def approve(self, approval_id: int, *, actor_user_id: int | None, reason: str | None = None) -> DeactivationApproval:
        return self._decide(approval_id, ApprovalStatus.APPROVED, actor_user_id=actor_user_id, reason=reason)

    def reject(self, approval_id: int, *, actor_user_id: int | None, reason: str) -> DeactivationApproval:
        if not (reason or "").strip():
            raise ValueError("A rejection reason is required.")
        return self._decide(approval_id, ApprovalStatus.REJECTED, actor_user_id=actor_user_id, reason=reason.strip())

    def expire_if_due(self, approval: DeactivationApproval, *, now: datetime | None = None) -> bool:
        """Flip an overdue pending approval to ``expired``; returns True when this call did it."""

        now = now or self.clock()
        if approval.status != ApprovalStatus.PENDING or now < ensure_aware(approval.expires_at):
            return False
        won = self._compare_and_set(approval.id, ApprovalStatus.EXPIRED, decided_at=now)
        if not won:
            self.session.refresh(approval)
            return False
        self.audit.record(
            action=audit_actions.APPROVAL_EXPIRED,
            entity_type="approval",
            entity_id=approval.id,
            metadata={"expires_at": isoformat(approval.expires_at)},
        )
        self.session.commit()
        record_approval_decision(ApprovalStatus.EXPIRED.value)
        current_app.logger.info(
            "Directory approval %s expired",
            approval.id,
            extra={"directory_approval_id": approval.id},
        )
        return True

    def check_not_expired(self, approval: DeactivationApproval, *, now: datetime | None = None) -> None:
        """Raise ``approval_expired`` when the window has closed, whatever the status."""

        now = now or self.clock()
        if now >= ensure_aware(approval.expires_at):
            self.expire_if_due(approval, now=now)
            raise ApprovalExpiredError(
                f"Approval {approval.id} expired at {isoformat(approval.expires_at)}.",
                approval_id=approval.id,
            )

    def _decide(
        self,
        approval_id: int,
        target: ApprovalStatus,
        *,
        actor_user_id: int | None,
        reason: str | None,
    ) -> DeactivationApproval:
        approval = self.load(approval_id)
        now = self.clock()
        self.check_not_expired(approval, now=now)

        if approval.status == target:
            return approval
        if not can_transition(approval.status, target):
            raise ApprovalClosedError(
                f"Approval {approval.id} is already {approval.status.value}.",
                approval_id=approval.id,
                status=approval.status.value,
            )

        won = self._compare_and_set(
            approval.id,
            target,
            decided_by_user_id=actor_user_id,
            decided_at=now,
            decision_reason=reason,
        )
        if not won:
            self.session.refresh(approval)
            if approval.status == target:
                return approval
            raise ApprovalClosedError(
                f"Approval {approval.id} was decided concurrently ({approval.status.value}).",
                approval_id=approval.id,
                status=approval.status.value,
            )

        self.audit.record(
            action=_AUDIT_ACTIONS[target],
            entity_type="approval",
            entity_id=approval.id,
            actor_user_id=actor_user_id,
            metadata={"preview_id": approval.preview_id, "reason": reason},
        )
        self.session.commit()
        record_approval_decision(target.value)
        current_app.logger.info(
            "Directory approval %s %s by user %s",
            approval.id,
            target.value,
            actor_user_id,
            extra={"directory_approval_id": approval.id, "directory_approval_status": target.value},
        )
        self.session.refresh(approval)
        return approval

    def _compare_and_set(self, approval_id: int, target: ApprovalStatus, **values: Any) -> bool:
        result = self.session.execute(
            update(DeactivationApproval)
            .where(
                DeactivationApproval.id == approval_id,
                DeactivationApproval.status == ApprovalStatus.PENDING,
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def load(self, approval_id: int) -> DeactivationApproval:
        approval = self.session.get(DeactivationApproval, approval_id)
        if approval is None:
            raise ApprovalNotFoundError(f"Approval {approval_id} not found.", approval_id=approval_id)
        return approval

    def get_approval(self, approval_id: int) -> DeactivationApproval:
        approval = self.load(approval_id)
        self.expire_if_due(approval)
        return approval

    def list_approvals(
        self,
        scope: Scope,
        *,
        status: str | ApprovalStatus | None = ApprovalStatus.PENDING,
        limit: int | str | None = DEFAULT_LIST_LIMIT,
    ) -> list[DeactivationApproval]:
        """
        List approvals in ``scope`` newest first, expiring overdue ones on the way.
        """

        status_filter = coerce_status_filter(status)
        resolved_limit = clamp_limit(limit)
        now = self.clock()

        overdue = (
            self._scoped_query(scope)
            .filter(
                DeactivationApproval.status == ApprovalStatus.PENDING,
                DeactivationApproval.expires_at <= now,
            )
            .all()
        )
        for approval in overdue:
            self.expire_if_due(approval, now=now)

        query = self._scoped_query(scope)
        if status_filter is not None:
            query = query.filter(DeactivationApproval.status == status_filter)
        return (
            query.order_by(DeactivationApproval.requested_at.desc(), DeactivationApproval.id.desc())
            .limit(resolved_limit)
            .all()
        )

    def _scoped_query(self, scope: Scope):
        query = self.session.query(DeactivationApproval)
        if scope.school_id:
            query = query.filter(DeactivationApproval.school_id == scope.school_id)
        if scope.district_id:
            query = query.filter(DeactivationApproval.district_id == scope.district_id)
        return query


def serialize_approval(approval: DeactivationApproval) -> dict[str, Any]:
    return {
        "id": approval.id,
        "status": approval.status.value,
        "source_id": approval.source_id,
        "source_run_id": approval.source_run_id,
        "preview_id": approval.preview_id,
        "school_id": approval.school_id,
        "district_id": approval.district_id,
        "requested_by_user_id": approval.requested_by_user_id,
        "requested_at": isoformat(approval.requested_at),
        "decided_by_user_id": approval.decided_by_user_id,
        "decided_at": isoformat(approval.decided_at),
        "decision_reason": approval.decision_reason,
        "applied_at": isoformat(approval.applied_at),
        "apply_job_id": approval.apply_job_id,
        "expires_at": isoformat(approval.expires_at),
        "stats": dict(approval.stats_json or {}),
        "metadata": dict(approval.metadata_json or {}),
    }


def serialize_preview(preview: DirectoryPreview, *, sample_limit: int | None = None) -> dict[str, Any]:
    """Preview payload; diff lists are truncated to ``sample_limit`` items each."""

    diff = preview.diff_json or {}
    sampled: dict[str, Any] = {}
    truncated = False
    for key in ("adds", "updates", "deactivation_candidates"):
        items = list(diff.get(key) or [])
        if sample_limit is not None and len(items) > sample_limit:
            truncated = True
            items = items[:sample_limit]
        sampled[key] = items
    sampled["truncated"] = truncated
    return {
        "id": preview.id,
        "source_id": preview.source_id,
        "source_run_id": preview.source_run_id,
        "school_id": preview.school_id,
        "district_id": preview.district_id,
        "requires_approval": preview.requires_approval,
        "deactivate_missing": preview.deactivate_missing,
        "dry_run": preview.dry_run,
        "approval_id": preview.approval_id,
        "source_hash": preview.source_hash,
        "expires_at": isoformat(preview.expires_at),
        "applied_at": isoformat(preview.applied_at),
        "stats": dict(preview.stats_json or {}),
        "diff": sampled,
        "apply_result": preview.apply_result_json,
    }
