from __future__ import annotations

import uuid

import django.core.serializers.json
from django.db import migrations, models


class Migration(migrations.Migration):
    """
    Append-only activity log. Rows are inserted by apps.audit.hooks.emit_audit_event() only.
    """

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="AuditEvent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("event_name", models.CharField(max_length=128)),
                (
                    "status",
                    models.CharField(
                        choices=[("success", "success"), ("failed", "failed")],
                        default="success",
                        max_length=16,
                    ),
                ),
                ("description", models.CharField(blank=True, default="", max_length=512)),
                ("company_id", models.UUIDField(blank=True, null=True)),
                ("actor_id", models.CharField(blank=True, max_length=64, null=True)),
                (
                    "payload",
                    models.JSONField(default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "audit_events",
                "indexes": [
                    models.Index(fields=["company_id", "created_at"], name="audit_event_company_idx"),
                    models.Index(fields=["event_name", "created_at"], name="audit_event_name_idx"),
                ],
            },
        ),
    ]
