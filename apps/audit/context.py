from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from uuid import UUID


# Only emit_audit_event() may set this to True during write.
AUDIT_EMIT_ALLOWED: ContextVar[bool] = ContextVar("AUDIT_EMIT_ALLOWED", default=False)


@dataclass(frozen=True)
class AuditContext:
    company_id: UUID | None
    is_system: bool = False
