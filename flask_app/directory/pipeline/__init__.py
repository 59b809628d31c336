"""Directory reconciliation pipeline: diff, run, approve, apply."""

from __future__ import annotations

from .apply import ApplyCounts, ApplyExecutor, ApplyResult, ApplyService
from .approvals import TRANSITIONS, ApprovalGate, can_transition, serialize_approval, serialize_preview
from .audit import AuditSink
from .diff import CanonicalRecord, Diff, DiffStats, IncomingRow, RowError, Scope, compute_diff
from .ops_summary import OpsSummaryService
from .orchestrator import RunOrchestrator, SourceRunResult, SyncOptions, serialize_run
from .scheduling import find_due_sources, is_due, sync_due_sources

__all__ = [
    "ApplyCounts",
    "ApplyExecutor",
    "ApplyResult",
    "ApplyService",
    "ApprovalGate",
    "AuditSink",
    "CanonicalRecord",
    "Diff",
    "DiffStats",
    "IncomingRow",
    "OpsSummaryService",
    "RowError",
    "RunOrchestrator",
    "Scope",
    "SourceRunResult",
    "SyncOptions",
    "TRANSITIONS",
    "can_transition",
    "compute_diff",
    "find_due_sources",
    "is_due",
    "serialize_approval",
    "serialize_preview",
    "serialize_run",
    "sync_due_sources",
]
