"""Infrastructure helpers for the monorepo."""

from .audit_models import AuditLog
from .audit_models import Base as AuditBase

__all__ = [
    "AuditBase",
    "AuditLog",
]
