"""
SQLAlchemy models for directory reconciliation.

Sources feed runs, each successful run persists exactly one preview, and a
destructive preview is gated by one deactivation approval. Records refer to
each other by id; relationships exist only for convenient lookups.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class SourceRunStatus(str, enum.Enum):
    """Lifecycle states for a source run."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SourceRunStatus.SUCCEEDED, SourceRunStatus.FAILED)


class ApprovalStatus(str, enum.Enum):
    """Decision states for a deactivation approval."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ContactType(str, enum.Enum):
    """Canonical contact types recognised in the directory."""

    PARENT_GUARDIAN = "parent_guardian"
    TEACHER = "teacher"
    STAFF = "staff"
    STUDENT = "student"
    OTHER = "other"


def build_scope_key(school_id: str | None, district_id: str | None) -> str:
    """Return the canonical tenant key; school scope takes precedence over district."""

    if school_id:
        return f"school:{school_id}"
    if district_id:
        return f"district:{district_id}"
    raise ValueError("A scope requires school_id or district_id.")


class DirectorySource(BaseModel):
    """A configured external roster feed."""

    __tablename__ = "directory_sources"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    school_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    district_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    source_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    config_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    schedule_cron: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    schedule_timezone: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    timeout_seconds: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    deactivate_missing_default: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True, index=True)
    last_run_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    runs = relationship("SourceRun", back_populates="source", order_by="SourceRun.id")

    __table_args__ = (
        CheckConstraint(
            "school_id IS NOT NULL OR district_id IS NOT NULL",
            name="ck_directory_sources_scope",
        ),
    )

    def __repr__(self):
        return f"<DirectorySource {self.id} {self.source_type}>"

    @property
    def scope_key(self) -> str:
        return build_scope_key(self.school_id, self.district_id)


class SourceRun(BaseModel):
    """One synchronization attempt for a source."""

    __tablename__ = "directory_source_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("directory_sources.id"), nullable=False, index=True)
    status: Mapped[SourceRunStatus] = mapped_column(
        Enum(SourceRunStatus, name="directory_source_run_status_enum"),
        nullable=False,
        default=SourceRunStatus.QUEUED,
        index=True,
    )
    # Equals source_id while queued/running and NULL once terminal; the unique
    # constraint allows a single active run per source.
    active_source_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True, unique=True)
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    deactivate_missing: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    triggered_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    job_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    stats_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    errors_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    error_reason: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    source = relationship("DirectorySource", back_populates="runs")
    preview = relationship("DirectoryPreview", back_populates="source_run", uselist=False)

    __table_args__ = (Index("idx_directory_source_runs_source_status", "source_id", "status"),)

    def __repr__(self):
        return f"<SourceRun {self.id} source={self.source_id} {self.status.value}>"


class DirectoryPreview(BaseModel):
    """The persisted diff computed by one run."""

    __tablename__ = "directory_previews"

    id: Mapped[int] = mapped_column(primary_key=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("directory_sources.id"), nullable=False, index=True)
    source_run_id: Mapped[int] = mapped_column(ForeignKey("directory_source_runs.id"), nullable=False, unique=True)
    school_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    district_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    diff_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    stats_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    source_hash: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    requires_approval: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    deactivate_missing: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    approval_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    apply_claimed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    apply_claim_token: Mapped[str | None] = mapped_column(db.String(36), nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    apply_result_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    source_run = relationship("SourceRun", back_populates="preview")

    def __repr__(self):
        return f"<DirectoryPreview {self.id} run={self.source_run_id}>"


class DeactivationApproval(BaseModel):
    """Human decision gating a preview that would deactivate records."""

    __tablename__ = "directory_deactivation_approvals"

    id: Mapped[int] = mapped_column(primary_key=True)
    preview_id: Mapped[int] = mapped_column(ForeignKey("directory_previews.id"), nullable=False, unique=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("directory_sources.id"), nullable=False, index=True)
    source_run_id: Mapped[int] = mapped_column(ForeignKey("directory_source_runs.id"), nullable=False)
    school_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    district_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus, name="directory_approval_status_enum"),
        nullable=False,
        default=ApprovalStatus.PENDING,
        index=True,
    )
    requested_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    decided_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    decision_reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    apply_job_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    stats_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    preview = relationship("DirectoryPreview", foreign_keys=[preview_id])

    __table_args__ = (
        Index("idx_directory_approvals_scope_status", "school_id", "district_id", "status"),
    )

    def __repr__(self):
        return f"<DeactivationApproval {self.id} {self.status.value}>"


class DirectoryContact(BaseModel):
    """Canonical directory record, authoritative until an apply overwrites it."""

    __tablename__ = "directory_contacts"

    id: Mapped[int] = mapped_column(primary_key=True)
    scope_key: Mapped[str] = mapped_column(db.String(80), nullable=False, index=True)
    school_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    district_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    email: Mapped[str] = mapped_column(db.String(255), nullable=False)
    first_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    contact_type: Mapped[str] = mapped_column(db.String(32), nullable=False, default=ContactType.OTHER.value)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True, index=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    deactivation_reason: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    source_id: Mapped[int | None] = mapped_column(ForeignKey("directory_sources.id"), nullable=True)
    last_applied_preview_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("scope_key", "external_id", name="uq_directory_contacts_scope_external_id"),
        UniqueConstraint("scope_key", "email", name="uq_directory_contacts_scope_email"),
        Index("idx_directory_contacts_scope_active", "scope_key", "is_active"),
    )

    def __repr__(self):
        return f"<DirectoryContact {self.scope_key}:{self.external_id}>"

    def reactivate(self) -> None:
        self.is_active = True
        self.deactivated_at = None
        self.deactivation_reason = None

    def soft_delete(self, *, reason: str | None = None, deactivated_at: datetime | None = None) -> None:
        """
        Mark the record inactive without removing history.
        """

        if self.is_active:
            self.is_active = False
            self.deactivated_at = deactivated_at
        self.deactivation_reason = reason
