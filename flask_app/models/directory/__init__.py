"""
Directory reconciliation models: sources, runs, previews, approvals and the
canonical contact records they reconcile.
"""

from .schema import (
    ApprovalStatus,
    ContactType,
    DeactivationApproval,
    DirectoryContact,
    DirectoryPreview,
    DirectorySource,
    SourceRun,
    SourceRunStatus,
    build_scope_key,
)

__all__ = [
    "ApprovalStatus",
    "ContactType",
    "DeactivationApproval",
    "DirectoryContact",
    "DirectoryPreview",
    "DirectorySource",
    "SourceRun",
    "SourceRunStatus",
    "build_scope_key",
]
