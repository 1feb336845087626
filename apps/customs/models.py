from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.customs.constants import ItemTypeCode


class ItemType(models.TextChoices):
    ROH = ItemTypeCode.ROH, "raw material"
    HALB = ItemTypeCode.HALB, "work in process"
    FERT = ItemTypeCode.FERT, "finished good"
    HIBE = ItemTypeCode.HIBE, "capital goods"
    HIBE_M = ItemTypeCode.HIBE_M, "capital goods - machinery"
    HIBE_E = ItemTypeCode.HIBE_E, "capital goods - equipment"
    HIBE_T = ItemTypeCode.HIBE_T, "capital goods - tools"
    SCRAP = ItemTypeCode.SCRAP, "scrap"


QTY_FIELD = dict(max_digits=18, decimal_places=6)


class LedgerEntryQuerySet(models.QuerySet):
    def active(self):
        return self.filter(deleted_at__isnull=True)

    def chain(self, company_id, item_code):
        """All live rows of one item, oldest first."""
        return self.active().filter(company_id=company_id, item_code=item_code).order_by("date")


class LedgerEntry(models.Model):
    """
    One row per (company_id, item_code, date).

    LOCKED invariants:
    - ending == beginning + incoming - outgoing + adjustment
    - variant == stock_count - ending when a stock count exists, else 0
    - beginning == ending of the previous live row of the same item (0 for the first)
    Only apps.customs.store writes rows; only apps.customs.propagation rewrites
    beginning/ending/variant of later rows.
    """

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    company_id = models.UUIDField()

    item_type = models.CharField(max_length=16, choices=ItemType.choices)
    item_code = models.CharField(max_length=64)
    item_name = models.CharField(max_length=255)
    uom = models.CharField(max_length=32)

    date = models.DateField()

    beginning = models.DecimalField(default=Decimal("0"), **QTY_FIELD)
    incoming = models.DecimalField(default=Decimal("0"), **QTY_FIELD)
    outgoing = models.DecimalField(default=Decimal("0"), **QTY_FIELD)
    # signed: LOSS is already negative by the time it reaches the ledger
    adjustment = models.DecimalField(default=Decimal("0"), **QTY_FIELD)
    ending = models.DecimalField(default=Decimal("0"), **QTY_FIELD)
    stock_count = models.DecimalField(null=True, blank=True, **QTY_FIELD)
    variant = models.DecimalField(default=Decimal("0"), **QTY_FIELD)

    remarks = models.TextField(null=True, blank=True)

    deleted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = LedgerEntryQuerySet.as_manager()

    class Meta:
        db_table = "customs_ledger_entries"
        constraints = [
            models.UniqueConstraint(
                fields=["company_id", "item_code", "date"],
                name="uq_customs_ledger_company_item_date",
            ),
        ]
        indexes = [
            models.Index(fields=["company_id", "item_code", "date"], name="customs_le_chain_idx"),
            models.Index(fields=["company_id", "item_code", "uom"], name="customs_le_item_uom_idx"),
            models.Index(fields=["company_id", "date"], name="customs_le_company_date_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.item_code} @ {self.date}"

    def expected_ending(self) -> Decimal:
        return (
            Decimal(self.beginning)
            + Decimal(self.incoming)
            - Decimal(self.outgoing)
            + Decimal(self.adjustment)
        )

    def expected_variant(self) -> Decimal:
        if self.stock_count is not None and Decimal(self.stock_count) > 0:
            return Decimal(self.stock_count) - Decimal(self.ending)
        return Decimal("0")

    def recompute(self, beginning: Decimal) -> None:
        """Derive beginning/ending/variant; movement quantities are left untouched."""
        self.beginning = Decimal(beginning)
        self.ending = self.expected_ending()
        self.variant = self.expected_variant()

    def clean(self):
        super().clean()

        for field in ("incoming", "outgoing"):
            if Decimal(getattr(self, field)) < 0:
                raise ValidationError(f"{field} must be >= 0")
        if self.stock_count is not None and Decimal(self.stock_count) < 0:
            raise ValidationError("stock_count must be >= 0")


class PostedMovement(models.Model):
    """
    Posted incoming/outgoing goods lines (customs documents).

    Written alongside the ledger row by post_movement/import_movements (one line
    per direction and document). Opening-balance validation reads it to refuse
    items that already have transaction history.
    """

    class Direction(models.TextChoices):
        INCOMING = "incoming", "incoming"
        OUTGOING = "outgoing", "outgoing"

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    company_id = models.UUIDField()

    direction = models.CharField(max_length=16, choices=Direction.choices)
    document_number = models.CharField(max_length=64)

    item_type = models.CharField(max_length=16, choices=ItemType.choices)
    item_code = models.CharField(max_length=64)
    item_name = models.CharField(max_length=255)
    uom = models.CharField(max_length=32)
    qty = models.DecimalField(**QTY_FIELD)
    posted_on = models.DateField()

    deleted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "customs_posted_movements"
        indexes = [
            models.Index(fields=["company_id", "item_code"], name="customs_pm_item_idx"),
            models.Index(fields=["company_id", "direction", "posted_on"], name="customs_pm_direction_idx"),
        ]


class RecalcQueueQuerySet(models.QuerySet):
    def pending_in_order(self):
        return self.filter(status=RecalcQueueItem.Status.PENDING).order_by("priority", "queued_at", "id")


class RecalcQueueItem(models.Model):
    """
    Deferred "recompute the stock snapshot of this item from this date" work.

    State machine (LOCKED):
      PENDING -> PROCESSING -> DONE
      PROCESSING -> FAILED -> PENDING (retry)
    At most one non-DONE row per (company_id, item_type, item_code, recalc_date).
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "pending"
        PROCESSING = "PROCESSING", "processing"
        DONE = "DONE", "done"
        FAILED = "FAILED", "failed"

    id = models.BigAutoField(primary_key=True)
    company_id = models.UUIDField()

    item_type = models.CharField(max_length=16, choices=ItemType.choices)
    item_code = models.CharField(max_length=64)
    recalc_date = models.DateField()

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    priority = models.IntegerField(default=0)
    reason = models.CharField(max_length=255)

    queued_at = models.DateTimeField(default=timezone.now)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)

    objects = RecalcQueueQuerySet.as_manager()

    class Meta:
        db_table = "customs_recalc_queue"
        constraints = [
            models.UniqueConstraint(
                fields=["company_id", "item_type", "item_code", "recalc_date"],
                condition=~Q(status="DONE"),
                name="uq_customs_recalc_queue_active_key",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "priority", "queued_at"], name="customs_rq_pending_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.item_type}/{self.item_code} @ {self.recalc_date} [{self.status}]"

    def _transition(self, expected: str, target: str) -> None:
        if self.status != expected:
            raise ValidationError(f"recalc queue item cannot move {self.status} -> {target}")
        self.status = target

    def mark_processing(self, *, now=None) -> None:
        self._transition(self.Status.PENDING, self.Status.PROCESSING)
        self.started_at = now or timezone.now()
        self.error_message = None
        self.save(update_fields=["status", "started_at", "error_message"])

    def mark_done(self, *, now=None) -> None:
        self._transition(self.Status.PROCESSING, self.Status.DONE)
        self.completed_at = now or timezone.now()
        self.save(update_fields=["status", "completed_at"])

    def mark_failed(self, message: str, *, now=None) -> None:
        self._transition(self.Status.PROCESSING, self.Status.FAILED)
        self.completed_at = now or timezone.now()
        self.error_message = message
        self.save(update_fields=["status", "completed_at", "error_message"])

    def requeue(self, *, now=None) -> None:
        self._transition(self.Status.FAILED, self.Status.PENDING)
        self.queued_at = now or timezone.now()
        self.started_at = None
        self.completed_at = None
        self.save(update_fields=["status", "queued_at", "started_at", "completed_at"])
