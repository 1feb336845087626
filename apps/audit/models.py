from __future__ import annotations

from uuid import uuid4

from django.core.exceptions import PermissionDenied
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models

from .context import AUDIT_EMIT_ALLOWED
from .guards import guard_event_registry, guard_payload


class AuditEvent(models.Model):
    """Append-only activity log; rows are written only by emit_audit_event()."""

    class Status(models.TextChoices):
        SUCCESS = "success", "success"
        FAILED = "failed", "failed"

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)

    event_name = models.CharField(max_length=128)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.SUCCESS)
    description = models.CharField(max_length=512, blank=True, default="")

    company_id = models.UUIDField(null=True, blank=True)
    actor_id = models.CharField(max_length=64, null=True, blank=True)
    payload = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "audit_events"
        indexes = [
            models.Index(fields=["company_id", "created_at"], name="audit_event_company_idx"),
            models.Index(fields=["event_name", "created_at"], name="audit_event_name_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.event_name} [{self.status}]"

    def save(self, *args, **kwargs):
        # Append-only: no updates (only inserts)
        if self.pk and not self._state.adding:
            raise PermissionDenied("AuditEvent is immutable (append-only)")

        # EntryPoint lock: only emit_audit_event() may write
        if not AUDIT_EMIT_ALLOWED.get():
            raise PermissionDenied("AuditEvent writes must go through emit_audit_event()")

        # Model-level guards (bypass-resistant)
        guard_event_registry(self.event_name)
        guard_payload(self.event_name, self.payload)

        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise PermissionDenied("AuditEvent delete is forbidden (append-only)")
