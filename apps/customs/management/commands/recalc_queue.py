from __future__ import annotations

from collections import Counter

from django.core.management.base import BaseCommand, CommandError

from apps.customs.models import RecalcQueueItem
from apps.customs.recalc_queue import requeue_failed
from apps.tenancy.context import parse_company_id


class Command(BaseCommand):
    help = "Inspect the deferred recalculation queue in consumption order, or retry FAILED rows."

    def add_arguments(self, parser):
        parser.add_argument("--company-id", type=str, required=False, help="Optional company UUID filter.")
        parser.add_argument("--list", action="store_true", help="List PENDING rows (priority, queued_at).")
        parser.add_argument("--limit", type=int, default=50, help="Max rows to list (default 50).")
        parser.add_argument("--retry-failed", action="store_true", help="Move FAILED rows back to PENDING.")

    def handle(self, *args, **options):
        qs = RecalcQueueItem.objects.all()

        raw_company = options.get("company_id")
        if raw_company:
            company_id = parse_company_id(raw_company)
            if company_id is None:
                raise CommandError(f"--company-id is not a valid UUID: {raw_company}")
            qs = qs.filter(company_id=company_id)

        if options["limit"] < 1:
            raise CommandError("--limit must be >= 1")

        if options["retry_failed"]:
            self._retry_failed(qs)

        if options["list"]:
            self._list(qs, options["limit"])

        counts = Counter(qs.values_list("status", flat=True))
        summary = " ".join(f"{status}={counts.get(status, 0)}" for status in RecalcQueueItem.Status.values)
        self.stdout.write(self.style.SUCCESS(f"OK: recalc queue {summary}"))

    def _list(self, qs, limit: int) -> None:
        for item in qs.pending_in_order()[:limit]:
            self.stdout.write(
                f"{item.priority:>3} {item.queued_at.isoformat()} "
                f"{item.company_id} {item.item_type}/{item.item_code} {item.recalc_date} {item.reason}"
            )

    def _retry_failed(self, qs) -> None:
        requeued = requeue_failed(qs, description="recalc_queue --retry-failed")
        self.stdout.write(f"requeued={sum(requeued.values())}")
