"""Aether Audit - append-only record of governance transitions."""

from .audit_emitter import AuditEmitter

__all__ = ["AuditEmitter"]
