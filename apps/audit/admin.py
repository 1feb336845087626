# apps/audit/admin.py
from __future__ import annotations

import json

from django.contrib import admin
from django.core.exceptions import PermissionDenied
from django.core.serializers.json import DjangoJSONEncoder

from apps.tenancy.context import get_active_company_id

from .models import AuditEvent


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ("created_at", "event_name", "status", "company_id", "actor_id", "description", "payload_preview")
    list_filter = ("event_name", "status")
    search_fields = ("event_name", "actor_id", "description")
    date_hierarchy = "created_at"
    ordering = ("-created_at",)
    readonly_fields = ("event_name", "status", "description", "company_id", "actor_id", "payload_pretty", "created_at")
    fields = readonly_fields

    actions = None

    def get_queryset(self, request):
        qs = super().get_queryset(request)
        if request.user.is_superuser:
            return qs
        company_id = getattr(request, "company_id", None) or get_active_company_id()
        # fail-closed: no bound company => nothing visible
        return qs.filter(company_id=company_id) if company_id else qs.none()

    def payload_pretty(self, obj: AuditEvent) -> str:
        return json.dumps(obj.payload or {}, indent=2, sort_keys=True, ensure_ascii=False, cls=DjangoJSONEncoder)

    payload_pretty.short_description = "payload"

    def payload_preview(self, obj: AuditEvent) -> str:
        s = json.dumps(obj.payload or {}, sort_keys=True, ensure_ascii=False, cls=DjangoJSONEncoder)
        return (s[:77] + "...") if len(s) > 80 else s

    payload_preview.short_description = "payload"

    def has_add_permission(self, request):
        # events are emitted from code only
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def delete_model(self, request, obj):
        raise PermissionDenied("AuditEvent is append-only; delete forbidden")

    def delete_queryset(self, request, queryset):
        raise PermissionDenied("AuditEvent is append-only; bulk delete forbidden")
