"""Audit logging package."""

from voice_ledger.audit.logger import AuditLogger

__all__ = ["AuditLogger"]
