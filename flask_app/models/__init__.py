# flask_app/models/__init__.py
"""
Database models package
"""

from .audit import AuditLog
from .base import BaseModel, db
from .directory import (
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
from .user import DIRECTORY_ROLES, User

__all__ = [
    "db",
    "BaseModel",
    "User",
    "DIRECTORY_ROLES",
    "AuditLog",
    # Directory models
    "DirectorySource",
    "SourceRun",
    "DirectoryPreview",
    "DeactivationApproval",
    "DirectoryContact",
    # Directory enums
    "SourceRunStatus",
    "ApprovalStatus",
    "ContactType",
    "build_scope_key",
]
