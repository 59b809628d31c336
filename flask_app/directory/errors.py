"""
Error taxonomy for directory reconciliation.

Each exception carries a stable ``reason`` code that is surfaced to API
callers, and the HTTP status the blueprint maps it to. Row-level and
apply-item problems are not exceptions; they are collected as bounded lists
on the run and the apply result.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any


class DirectorySyncError(Exception):
    """Base exception for directory pipeline failures."""

    reason = "directory_error"
    http_status = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(message or self.reason)
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": str(self), "reason": self.reason}
        payload.update({key: value for key, value in self.details.items() if value is not None})
        return payload


class SourceNotFoundError(DirectorySyncError):
    reason = "source_not_found"
    http_status = HTTPStatus.NOT_FOUND


class SourceDisabledError(DirectorySyncError):
    reason = "source_disabled"
    http_status = HTTPStatus.CONFLICT


class RunNotFoundError(DirectorySyncError):
    reason = "run_not_found"
    http_status = HTTPStatus.NOT_FOUND


class RunInProgressError(DirectorySyncError):
    """Raised when a source already has a queued or running run."""

    reason = "run_in_progress"
    http_status = HTTPStatus.CONFLICT

    def __init__(self, source_id: int, *, active_run_id: int | None = None) -> None:
        super().__init__(
            f"Source {source_id} already has an active run; retry once it finishes.",
            source_id=source_id,
            active_run_id=active_run_id,
        )
        self.source_id = source_id
        self.active_run_id = active_run_id


class ApprovalNotFoundError(DirectorySyncError):
    reason = "approval_not_found"
    http_status = HTTPStatus.NOT_FOUND


class PreviewNotFoundError(DirectorySyncError):
    reason = "preview_not_found"
    http_status = HTTPStatus.NOT_FOUND


class ApprovalClosedError(DirectorySyncError):
    """The approval was already decided (or lost a concurrent decision)."""

    reason = "approval_closed"
    http_status = HTTPStatus.CONFLICT


class ApprovalExpiredError(DirectorySyncError):
    reason = "approval_expired"
    http_status = HTTPStatus.GONE


class ApprovalNotApprovedError(DirectorySyncError):
    """Apply was requested before the approval was granted."""

    reason = "approval_not_approved"
    http_status = HTTPStatus.PRECONDITION_FAILED


class ApprovalRequiredError(DirectorySyncError):
    """A gated preview can only be applied through its approval."""

    reason = "approval_required"
    http_status = HTTPStatus.PRECONDITION_FAILED


class PreviewDryRunError(DirectorySyncError):
    reason = "preview_dry_run"
    http_status = HTTPStatus.PRECONDITION_FAILED


class PreviewExpiredError(DirectorySyncError):
    reason = "preview_expired"
    http_status = HTTPStatus.GONE


class ApplyInProgressError(DirectorySyncError):
    """Another worker holds the apply claim for this preview."""

    reason = "apply_in_progress"
    http_status = HTTPStatus.CONFLICT


class WorkerUnavailableError(DirectorySyncError):
    """The Celery broker refused the task; the queued run has been failed."""

    reason = "worker_unavailable"
    http_status = HTTPStatus.SERVICE_UNAVAILABLE


class NormalizerError(DirectorySyncError):
    """Fatal feed failure; the run fails and no preview is persisted."""

    reason = "adapter_error"
    http_status = HTTPStatus.BAD_GATEWAY


class AdapterUnreachableError(NormalizerError):
    reason = "adapter_unreachable"


class SyncTimeoutError(NormalizerError):
    reason = "timeout"
    http_status = HTTPStatus.GATEWAY_TIMEOUT


class FeedFormatError(NormalizerError):
    reason = "invalid_feed"


class UnsupportedSourceTypeError(NormalizerError):
    reason = "unsupported_source_type"


__all__ = [
    "DirectorySyncError",
    "SourceNotFoundError",
    "SourceDisabledError",
    "RunNotFoundError",
    "RunInProgressError",
    "ApprovalNotFoundError",
    "PreviewNotFoundError",
    "ApprovalClosedError",
    "ApprovalExpiredError",
    "ApprovalNotApprovedError",
    "ApprovalRequiredError",
    "PreviewDryRunError",
    "PreviewExpiredError",
    "ApplyInProgressError",
    "WorkerUnavailableError",
    "NormalizerError",
    "AdapterUnreachableError",
    "SyncTimeoutError",
    "FeedFormatError",
    "UnsupportedSourceTypeError",
]
