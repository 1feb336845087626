from __future__ import annotations

import uuid
from decimal import Decimal

import django.utils.timezone
from django.db import migrations, models

ITEM_TYPE_CHOICES = [
    ("ROH", "raw material"),
    ("HALB", "work in process"),
    ("FERT", "finished good"),
    ("HIBE", "capital goods"),
    ("HIBE-M", "capital goods - machinery"),
    ("HIBE-E", "capital goods - equipment"),
    ("HIBE-T", "capital goods - tools"),
    ("SCRAP", "scrap"),
]


class Migration(migrations.Migration):
    """
    Customs ledger core tables.

    - customs_ledger_entries: one row per (company_id, item_code, date), unique at DB level
    - customs_posted_movements: posted incoming/outgoing lines (read by opening-balance validation)
    - customs_recalc_queue: one non-DONE row per (company_id, item_type, item_code, recalc_date)
    """

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("company_id", models.UUIDField()),
                ("item_type", models.CharField(choices=ITEM_TYPE_CHOICES, max_length=16)),
                ("item_code", models.CharField(max_length=64)),
                ("item_name", models.CharField(max_length=255)),
                ("uom", models.CharField(max_length=32)),
                ("date", models.DateField()),
                ("beginning", models.DecimalField(decimal_places=6, default=Decimal("0"), max_digits=18)),
                ("incoming", models.DecimalField(decimal_places=6, default=Decimal("0"), max_digits=18)),
                ("outgoing", models.DecimalField(decimal_places=6, default=Decimal("0"), max_digits=18)),
                ("adjustment", models.DecimalField(decimal_places=6, default=Decimal("0"), max_digits=18)),
                ("ending", models.DecimalField(decimal_places=6, default=Decimal("0"), max_digits=18)),
                ("stock_count", models.DecimalField(blank=True, decimal_places=6, max_digits=18, null=True)),
                ("variant", models.DecimalField(decimal_places=6, default=Decimal("0"), max_digits=18)),
                ("remarks", models.TextField(blank=True, null=True)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "customs_ledger_entries",
                "indexes": [
                    models.Index(fields=["company_id", "item_code", "date"], name="customs_le_chain_idx"),
                    models.Index(fields=["company_id", "item_code", "uom"], name="customs_le_item_uom_idx"),
                    models.Index(fields=["company_id", "date"], name="customs_le_company_date_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("company_id", "item_code", "date"),
                        name="uq_customs_ledger_company_item_date",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PostedMovement",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("company_id", models.UUIDField()),
                (
                    "direction",
                    models.CharField(
                        choices=[("incoming", "incoming"), ("outgoing", "outgoing")],
                        max_length=16,
                    ),
                ),
                ("document_number", models.CharField(max_length=64)),
                ("item_type", models.CharField(choices=ITEM_TYPE_CHOICES, max_length=16)),
                ("item_code", models.CharField(max_length=64)),
                ("item_name", models.CharField(max_length=255)),
                ("uom", models.CharField(max_length=32)),
                ("qty", models.DecimalField(decimal_places=6, max_digits=18)),
                ("posted_on", models.DateField()),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "customs_posted_movements",
                "indexes": [
                    models.Index(fields=["company_id", "item_code"], name="customs_pm_item_idx"),
                    models.Index(fields=["company_id", "direction", "posted_on"], name="customs_pm_direction_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="RecalcQueueItem",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("company_id", models.UUIDField()),
                ("item_type", models.CharField(choices=ITEM_TYPE_CHOICES, max_length=16)),
                ("item_code", models.CharField(max_length=64)),
                ("recalc_date", models.DateField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "pending"),
                            ("PROCESSING", "processing"),
                            ("DONE", "done"),
                            ("FAILED", "failed"),
                        ],
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                ("priority", models.IntegerField(default=0)),
                ("reason", models.CharField(max_length=255)),
                ("queued_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
            ],
            options={
                "db_table": "customs_recalc_queue",
                "indexes": [
                    models.Index(fields=["status", "priority", "queued_at"], name="customs_rq_pending_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "DONE"), _negated=True),
                        fields=("company_id", "item_type", "item_code", "recalc_date"),
                        name="uq_customs_recalc_queue_active_key",
                    ),
                ],
            },
        ),
    ]
