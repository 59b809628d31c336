"""
Apply executor: writes an approved preview diff to the canonical directory.

Applying is exactly-once per preview. ``ApplyService`` claims the preview with
a compare-and-set on ``apply_claimed_at`` and a fresh ``apply_claim_token``;
the executor then writes adds, updates and deactivations as three batches.
Every commit is fenced on the token, so a caller whose stale claim was taken
over stops before writing anything further. A batch that fails is rolled back
and replayed one item at a time so a single bad record only fails itself.
The outcome is cached on the preview and returned verbatim on replay.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flask_app.directory.errors import (
    ApplyInProgressError,
    ApprovalClosedError,
    ApprovalNotApprovedError,
    ApprovalRequiredError,
    PreviewDryRunError,
    PreviewExpiredError,
    PreviewNotFoundError,
)
from flask_app.directory.metrics import record_apply
from flask_app.directory.utils import ensure_aware, isoformat, utcnow
from flask_app.models import (
    ApprovalStatus,
    DeactivationApproval,
    DirectoryContact,
    DirectoryPreview,
    SourceRun,
    build_scope_key,
    db,
)

from . import audit as audit_actions
from .approvals import ApprovalGate
from .audit import AuditSink

DEACTIVATION_REASON = "missing_from_source"
PARTIAL_FAILURE_REASON = "apply_partial_failure"

ADD = "add"
UPDATE = "update"
DEACTIVATE = "deactivate"


class ClaimLostError(Exception):
    """Another caller took over the apply claim; this caller must stop writing."""


class ApplyItemError(Exception):
    """A single diff item could not be applied."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass
class ApplyCounts:
    added: int = 0
    updated: int = 0
    reactivated: int = 0
    deactivated: int = 0
    skipped: int = 0
    failed: int = 0

    def bump(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class ApplyResult:
    preview_id: int
    approval_id: int | None = None
    applied_at: str | None = None
    counts: ApplyCounts = field(default_factory=ApplyCounts)
    apply_errors: list[dict[str, Any]] = field(default_factory=list)
    replayed: bool = False
    job_id: str | None = None

    @property
    def reason(self) -> str | None:
        return PARTIAL_FAILURE_REASON if self.apply_errors else None

    def as_dict(self) -> dict[str, Any]:
        payload = {
            "ok": True,
            "approval_id": self.approval_id,
            "preview_id": self.preview_id,
            "applied_at": self.applied_at,
            "counts": self.counts.as_dict(),
            "apply_errors": list(self.apply_errors),
            "replayed": self.replayed,
            "job_id": self.job_id,
        }
        if self.reason:
            payload["reason"] = self.reason
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, replayed: bool = False) -> "ApplyResult":
        return cls(
            preview_id=payload["preview_id"],
            approval_id=payload.get("approval_id"),
            applied_at=payload.get("applied_at"),
            counts=ApplyCounts(**dict(payload.get("counts") or {})),
            apply_errors=list(payload.get("apply_errors") or []),
            replayed=replayed,
            job_id=payload.get("job_id"),
        )


@dataclass
class _ApplyContext:
    preview: DirectoryPreview
    scope_key: str
    now: datetime
    claim_token: str | None = None


class ApplyExecutor:
    """Writes the three diff groups of a preview to ``DirectoryContact``."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def execute(
        self,
        preview: DirectoryPreview,
        *,
        now: datetime,
        include_deactivations: bool = True,
        claim_token: str | None = None,
    ) -> tuple[ApplyCounts, list[dict[str, Any]]]:
        self.session.refresh(preview)
        if claim_token is not None and (preview.applied_at is not None or preview.apply_claim_token != claim_token):
            raise ClaimLostError(f"Apply claim on preview {preview.id} was taken over.")
        diff = dict(preview.diff_json or {})
        ctx = _ApplyContext(
            preview=preview,
            scope_key=build_scope_key(preview.school_id, preview.district_id),
            now=now,
            claim_token=claim_token,
        )
        counts = ApplyCounts()
        errors: list[dict[str, Any]] = []

        groups: list[tuple[str, list[dict[str, Any]], Callable[[dict[str, Any], _ApplyContext], str]]] = [
            (ADD, list(diff.get("adds") or []), self._apply_add),
            (UPDATE, list(diff.get("updates") or []), self._apply_update),
        ]
        if include_deactivations:
            groups.append((DEACTIVATE, list(diff.get("deactivation_candidates") or []), self._apply_deactivate))

        for operation, items, handler in groups:
            self._apply_group(operation, items, handler, ctx, counts, errors)
        return counts, errors

    def _apply_group(self, operation, items, handler, ctx, counts: ApplyCounts, errors: list[dict[str, Any]]) -> None:
        if not items:
            return
        outcomes: list[str] = []
        try:
            for item in items:
                outcomes.append(handler(item, ctx))
            self._commit_fenced(ctx)
        except (SQLAlchemyError, ApplyItemError) as exc:
            self.session.rollback()
            current_app.logger.warning(
                "Directory apply batch '%s' failed for preview %s; retrying per item (%s)",
                operation,
                ctx.preview.id,
                exc,
                extra={"directory_preview_id": ctx.preview.id, "directory_apply_operation": operation},
            )
            self._apply_items_individually(operation, items, handler, ctx, counts, errors)
            return
        for outcome in outcomes:
            counts.bump(outcome)

    def _apply_items_individually(self, operation, items, handler, ctx, counts, errors) -> None:
        for item in items:
            try:
                outcome = handler(item, ctx)
                self._commit_fenced(ctx)
            except ApplyItemError as exc:
                self.session.rollback()
                errors.append(_item_error(item, operation, exc.reason, str(exc)))
                counts.bump("failed")
                continue
            except SQLAlchemyError as exc:
                self.session.rollback()
                errors.append(_item_error(item, operation, "database_error", str(getattr(exc, "orig", exc))))
                counts.bump("failed")
                continue
            counts.bump(outcome)

    def _commit_fenced(self, ctx: _ApplyContext) -> None:
        """Commit only while ``ctx.claim_token`` still owns the unapplied preview."""

        if ctx.claim_token is not None:
            owned = self.session.execute(
                update(DirectoryPreview)
                .where(
                    DirectoryPreview.id == ctx.preview.id,
                    DirectoryPreview.applied_at.is_(None),
                    DirectoryPreview.apply_claim_token == ctx.claim_token,
                )
                .values(apply_claim_token=ctx.claim_token)
                .execution_options(synchronize_session=False)
            )
            if owned.rowcount != 1:
                self.session.rollback()
                raise ClaimLostError(f"Apply claim on preview {ctx.preview.id} was taken over.")
        self.session.commit()

    def _find(self, ctx: _ApplyContext, external_id: str) -> DirectoryContact | None:
        return (
            self.session.query(DirectoryContact)
            .filter(DirectoryContact.scope_key == ctx.scope_key, DirectoryContact.external_id == external_id)
            .one_or_none()
        )

    def _apply_add(self, item: dict[str, Any], ctx: _ApplyContext) -> str:
        fields = dict(item.get("fields") or {})
        contact = self._find(ctx, item["external_id"])
        if contact is not None:
            for name, value in fields.items():
                setattr(contact, name, value)
            contact.reactivate()
            contact.last_applied_preview_id = ctx.preview.id
            return "updated"
        contact = DirectoryContact(
            scope_key=ctx.scope_key,
            school_id=ctx.preview.school_id,
            district_id=ctx.preview.district_id,
            external_id=item["external_id"],
            source_id=ctx.preview.source_id,
            last_applied_preview_id=ctx.preview.id,
            is_active=True,
            **fields,
        )
        self.session.add(contact)
        self.session.flush()
        return "added"

    def _apply_update(self, item: dict[str, Any], ctx: _ApplyContext) -> str:
        contact = self._find(ctx, item["external_id"])
        if contact is None:
            raise ApplyItemError(
                "record_missing",
                f"Directory record '{item['external_id']}' no longer exists in {ctx.scope_key}.",
            )
        for name, change in (item.get("changes") or {}).items():
            setattr(contact, name, change.get("to"))
        reactivated = bool(item.get("reactivate")) and not contact.is_active
        if reactivated:
            contact.reactivate()
        contact.last_applied_preview_id = ctx.preview.id
        self.session.flush()
        return "reactivated" if reactivated else "updated"

    def _apply_deactivate(self, item: dict[str, Any], ctx: _ApplyContext) -> str:
        contact = self._find(ctx, item["external_id"])
        if contact is None or not contact.is_active:
            return "skipped"
        contact.soft_delete(reason=DEACTIVATION_REASON, deactivated_at=ctx.now)
        contact.last_applied_preview_id = ctx.preview.id
        self.session.flush()
        return "deactivated"


def _item_error(item: Mapping[str, Any], operation: str, reason: str, message: str) -> dict[str, Any]:
    return {
        "external_id": item.get("external_id"),
        "operation": operation,
        "reason": reason,
        "message": message[:500],
    }


class ApplyService:
    """Guards, claims, executes and finalizes an apply."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        executor: ApplyExecutor | None = None,
        approvals: ApprovalGate | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session: Session = session or db.session
        self.audit = audit or AuditSink(self.session)
        self.approvals = approvals or ApprovalGate(self.session, audit=self.audit, clock=clock)
        self.executor = executor or ApplyExecutor(self.session)
        self.clock = clock

    def apply(self, approval_id: int, *, actor_user_id: int | None = None, job_id: str | None = None) -> ApplyResult:
        approval = self.approvals.load(approval_id)
        self.approvals.check_not_expired(approval)

        preview = self._load_preview(approval.preview_id)
        if preview.applied_at is not None:
            return self._replay(preview)

        if approval.status == ApprovalStatus.PENDING:
            raise ApprovalNotApprovedError(
                f"Approval {approval.id} has not been approved yet.",
                approval_id=approval.id,
            )
        if approval.status != ApprovalStatus.APPROVED:
            raise ApprovalClosedError(
                f"Approval {approval.id} is {approval.status.value}; nothing to apply.",
                approval_id=approval.id,
                status=approval.status.value,
            )
        return self._claim_and_execute(preview, approval=approval, actor_user_id=actor_user_id, job_id=job_id)

    def apply_preview(
        self,
        preview_id: int,
        *,
        actor_user_id: int | None = None,
        job_id: str | None = None,
    ) -> ApplyResult:
        """Apply a preview that needs no approval."""

        preview = self._load_preview(preview_id)
        if preview.dry_run:
            raise PreviewDryRunError(f"Preview {preview.id} came from a dry run.", preview_id=preview.id)
        if preview.requires_approval:
            raise ApprovalRequiredError(
                f"Preview {preview.id} deactivates records; apply it through approval {preview.approval_id}.",
                preview_id=preview.id,
                approval_id=preview.approval_id,
            )
        if self.clock() >= ensure_aware(preview.expires_at):
            raise PreviewExpiredError(
                f"Preview {preview.id} expired at {isoformat(preview.expires_at)}.",
                preview_id=preview.id,
            )
        if preview.applied_at is not None:
            return self._replay(preview)
        return self._claim_and_execute(preview, approval=None, actor_user_id=actor_user_id, job_id=job_id)

    def _load_preview(self, preview_id: int) -> DirectoryPreview:
        preview = self.session.get(DirectoryPreview, preview_id)
        if preview is None:
            raise PreviewNotFoundError(f"Preview {preview_id} not found.", preview_id=preview_id)
        return preview

    def _replay(self, preview: DirectoryPreview) -> ApplyResult:
        cached = preview.apply_result_json or {
            "preview_id": preview.id,
            "approval_id": preview.approval_id,
            "applied_at": isoformat(preview.applied_at),
        }
        result = ApplyResult.from_dict(cached, replayed=True)
        record_apply(outcome="replayed")
        return result

    def _claim(self, preview: DirectoryPreview, now: datetime, token: str) -> bool:
        stale_after = int(current_app.config.get("DIRECTORY_RUN_STALE_AFTER_SECONDS", 3600))
        outcome = self.session.execute(
            update(DirectoryPreview)
            .where(
                DirectoryPreview.id == preview.id,
                DirectoryPreview.applied_at.is_(None),
                or_(
                    DirectoryPreview.apply_claimed_at.is_(None),
                    DirectoryPreview.apply_claimed_at < now - timedelta(seconds=stale_after),
                ),
            )
            .values(apply_claimed_at=now, apply_claim_token=token)
            .execution_options(synchronize_session=False)
        )
        return outcome.rowcount == 1

    def _release_claim(self, preview_id: int, token: str) -> None:
        self.session.rollback()
        self.session.execute(
            update(DirectoryPreview)
            .where(
                DirectoryPreview.id == preview_id,
                DirectoryPreview.applied_at.is_(None),
                DirectoryPreview.apply_claim_token == token,
            )
            .values(apply_claimed_at=None, apply_claim_token=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def _claim_and_execute(
        self,
        preview: DirectoryPreview,
        *,
        approval: DeactivationApproval | None,
        actor_user_id: int | None,
        job_id: str | None,
    ) -> ApplyResult:
        now = self.clock()
        token = str(uuid.uuid4())
        if not self._claim(preview, now, token):
            return self._yield_to_winner(preview.id)
        self.session.commit()

        preview_id = preview.id
        try:
            counts, errors = self.executor.execute(
                preview,
                now=now,
                include_deactivations=bool(preview.deactivate_missing),
                claim_token=token,
            )
        except ClaimLostError:
            current_app.logger.warning(
                "Directory apply claim on preview %s was taken over; stopping",
                preview_id,
                extra={"directory_preview_id": preview_id},
            )
            return self._yield_to_winner(preview_id)
        except Exception:
            current_app.logger.exception(
                "Directory apply failed for preview %s; releasing claim",
                preview_id,
                extra={"directory_preview_id": preview_id},
            )
            self._release_claim(preview_id, token)
            record_apply(outcome="failed")
            raise

        return self._finalize(
            preview_id, approval, counts, errors, token=token, actor_user_id=actor_user_id, job_id=job_id
        )

    def _yield_to_winner(self, preview_id: int) -> ApplyResult:
        self.session.rollback()
        preview = self._load_preview(preview_id)
        self.session.refresh(preview)
        if preview.applied_at is not None:
            return self._replay(preview)
        raise ApplyInProgressError(f"Preview {preview_id} is already being applied.", preview_id=preview_id)

    def _finalize(
        self,
        preview_id: int,
        approval: DeactivationApproval | None,
        counts: ApplyCounts,
        errors: list[dict[str, Any]],
        *,
        token: str,
        actor_user_id: int | None,
        job_id: str | None,
    ) -> ApplyResult:
        preview = self._load_preview(preview_id)
        applied_at = self.clock()
        result = ApplyResult(
            preview_id=preview.id,
            approval_id=approval.id if approval else None,
            applied_at=isoformat(applied_at),
            counts=counts,
            apply_errors=errors,
            job_id=job_id,
        )

        executed = {
            "upserted": counts.added + counts.updated + counts.reactivated,
            "deactivated": counts.deactivated,
        }
        finalized = self.session.execute(
            update(DirectoryPreview)
            .where(
                DirectoryPreview.id == preview_id,
                DirectoryPreview.applied_at.is_(None),
                DirectoryPreview.apply_claim_token == token,
            )
            .values(
                applied_at=applied_at,
                apply_result_json=result.as_dict(),
                stats_json={**(preview.stats_json or {}), **executed},
                apply_claim_token=None,
            )
            .execution_options(synchronize_session=False)
        )
        if finalized.rowcount != 1:
            return self._yield_to_winner(preview_id)

        if approval is not None:
            stamped = self.session.execute(
                update(DeactivationApproval)
                .where(
                    DeactivationApproval.id == approval.id,
                    DeactivationApproval.applied_at.is_(None),
                    DeactivationApproval.status == ApprovalStatus.APPROVED,
                )
                .values(applied_at=applied_at, apply_job_id=job_id)
                .execution_options(synchronize_session=False)
            )
            if stamped.rowcount != 1:
                return self._yield_to_winner(preview_id)

        run = self.session.get(SourceRun, preview.source_run_id)
        if run is not None:
            run.stats_json = {**(run.stats_json or {}), **executed}

        self.audit.record(
            action=audit_actions.APPROVAL_APPLIED if approval is not None else audit_actions.PREVIEW_APPLIED,
            entity_type="approval" if approval is not None else "preview",
            entity_id=approval.id if approval is not None else preview.id,
            actor_user_id=actor_user_id,
            metadata={
                "preview_id": preview.id,
                "counts": counts.as_dict(),
                "apply_errors": len(errors),
                "job_id": job_id,
            },
        )
        self.session.commit()

        record_apply(outcome="partial" if errors else "ok", counts=counts.as_dict())
        current_app.logger.info(
            "Directory preview %s applied (added=%s updated=%s reactivated=%s deactivated=%s failed=%s)",
            preview.id,
            counts.added,
            counts.updated,
            counts.reactivated,
            counts.deactivated,
            counts.failed,
            extra={
                "directory_preview_id": preview.id,
                "directory_approval_id": approval.id if approval else None,
                "directory_apply_counts": counts.as_dict(),
            },
        )
        return result
