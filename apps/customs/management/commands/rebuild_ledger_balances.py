from __future__ import annotations

from collections import defaultdict

from django.core.management.base import BaseCommand, CommandError

from apps.audit.context import AuditContext
from apps.audit.hooks import emit_audit_event_best_effort
from apps.customs.coordinator import bulk_timeout, run_ledger_write
from apps.customs.models import LedgerEntry
from apps.customs.propagation import check_chain, rebuild_chain
from apps.tenancy.context import parse_company_id


class Command(BaseCommand):
    help = "Replay customs ledger chains from their first entry and repair beginning/ending/variant."

    def add_arguments(self, parser):
        parser.add_argument(
            "--company-id",
            type=str,
            required=False,
            help="Optional company UUID to rebuild only one company.",
        )
        parser.add_argument(
            "--item-code",
            type=str,
            required=False,
            help="Optional item code to rebuild only one chain.",
        )
        parser.add_argument(
            "--check",
            action="store_true",
            help="Report inconsistent rows without writing; exit non-zero if any exist.",
        )

    def handle(self, *args, **options):
        qs = LedgerEntry.objects.active()

        raw_company = options.get("company_id")
        if raw_company:
            company_id = parse_company_id(raw_company)
            if company_id is None:
                raise CommandError(f"--company-id is not a valid UUID: {raw_company}")
            qs = qs.filter(company_id=company_id)

        if options.get("item_code"):
            qs = qs.filter(item_code=options["item_code"].strip())

        chains = list(qs.values_list("company_id", "item_code").distinct().order_by("company_id", "item_code"))

        if options["check"]:
            self._check(chains)
            return

        corrected_by_company: dict = defaultdict(int)
        chains_by_company: dict = defaultdict(int)
        for c_id, item_code in chains:
            corrected = run_ledger_write(lambda: rebuild_chain(c_id, item_code), timeout=bulk_timeout())
            corrected_by_company[c_id] += corrected
            chains_by_company[c_id] += 1

        for c_id, corrected in corrected_by_company.items():
            if corrected:
                emit_audit_event_best_effort(
                    event_name="customs.ledger.rebuilt",
                    payload={"chains": chains_by_company[c_id], "corrected": corrected},
                    context=AuditContext(company_id=c_id),
                    description="rebuild_ledger_balances",
                )

        self.stdout.write(
            self.style.SUCCESS(
                f"OK: rebuilt ledger balances. chains={len(chains)} corrected={sum(corrected_by_company.values())}"
            )
        )

    def _check(self, chains):
        broken = 0
        for c_id, item_code in chains:
            for entry in check_chain(c_id, item_code):
                broken += 1
                self.stdout.write(
                    f"MISMATCH company={c_id} item={item_code} date={entry.date} "
                    f"expected beginning={entry.beginning} ending={entry.ending} variant={entry.variant}"
                )

        if broken:
            raise CommandError(f"{broken} inconsistent ledger row(s) in {len(chains)} chain(s)")
        self.stdout.write(self.style.SUCCESS(f"OK: {len(chains)} chain(s) consistent"))
