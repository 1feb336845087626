from __future__ import annotations

from django.contrib import admin, messages
from django.core.exceptions import PermissionDenied

from apps.tenancy.context import get_active_company_id

from .models import LedgerEntry, PostedMovement, RecalcQueueItem
from .recalc_queue import requeue_failed


# =========================
# Tenant resolution helpers
# =========================
def _is_system_admin_request(request) -> bool:
    return bool(getattr(request.user, "is_superuser", False))


def _company_id_for_request(request):
    """Company bound by the tenancy middleware; None => fail-closed."""
    return getattr(request, "company_id", None) or get_active_company_id()


def _tenant_filter_queryset(request, qs):
    """
    SYSTEM => all
    non-system => own company only
    fail-closed => none
    """
    if _is_system_admin_request(request):
        return qs
    company_id = _company_id_for_request(request)
    if company_id:
        return qs.filter(company_id=company_id)
    return qs.none()


def _ensure_obj_in_tenant_or_raise(request, obj) -> None:
    if obj is None or _is_system_admin_request(request):
        return
    company_id = _company_id_for_request(request)
    if not company_id:
        raise PermissionDenied("Tenant scope unresolved (fail-closed).")
    if obj.company_id != company_id:
        raise PermissionDenied("Cross-company admin access is forbidden.")


class TenantReadOnlyAdmin(admin.ModelAdmin):
    """Ledger tables are written by services only; admin is inspection."""

    actions = None

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        if request.method in {"GET", "HEAD", "OPTIONS"}:
            return bool(getattr(request.user, "is_staff", False))
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def get_queryset(self, request):
        return _tenant_filter_queryset(request, super().get_queryset(request))

    def get_object(self, request, object_id, from_field=None):
        obj = super().get_object(request, object_id, from_field=from_field)
        _ensure_obj_in_tenant_or_raise(request, obj)
        return obj

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def save_model(self, request, obj, form, change):
        raise PermissionDenied(f"{self.model.__name__} admin write forbidden")

    def delete_model(self, request, obj):
        raise PermissionDenied(f"{self.model.__name__} delete is forbidden")

    def delete_queryset(self, request, queryset):
        raise PermissionDenied(f"{self.model.__name__} delete is forbidden")


@admin.register(LedgerEntry)
class LedgerEntryAdmin(TenantReadOnlyAdmin):
    list_display = (
        "company_id",
        "item_code",
        "item_type",
        "uom",
        "date",
        "beginning",
        "incoming",
        "outgoing",
        "adjustment",
        "ending",
        "stock_count",
        "variant",
    )
    list_filter = ("item_type", "company_id")
    search_fields = ("item_code", "item_name")
    date_hierarchy = "date"
    ordering = ("company_id", "item_code", "date")


@admin.register(PostedMovement)
class PostedMovementAdmin(TenantReadOnlyAdmin):
    list_display = ("company_id", "direction", "document_number", "item_code", "qty", "posted_on")
    list_filter = ("direction", "item_type")
    search_fields = ("document_number", "item_code")
    ordering = ("-posted_on",)


@admin.register(RecalcQueueItem)
class RecalcQueueItemAdmin(TenantReadOnlyAdmin):
    list_display = (
        "company_id",
        "item_type",
        "item_code",
        "recalc_date",
        "status",
        "priority",
        "queued_at",
        "completed_at",
    )
    list_filter = ("status", "priority", "item_type")
    search_fields = ("item_code", "reason")
    ordering = ("priority", "queued_at")

    actions = ["action_requeue_failed"]

    @admin.action(description="Requeue selected FAILED rows")
    def action_requeue_failed(self, request, queryset):
        requeued = requeue_failed(_tenant_filter_queryset(request, queryset), description="admin requeue")
        count = sum(requeued.values())
        if count:
            self.message_user(request, f"Requeued {count} row(s).", level=messages.SUCCESS)
        else:
            self.message_user(request, "No FAILED rows in your allowed scope.", level=messages.WARNING)
