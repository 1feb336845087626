"""
Ledger write operations.

Each operation parses its payload at the boundary, then runs validation,
store writes, propagation and queueing inside ONE coordinated transaction.
Audit events are emitted after the transaction has finished, so an audit
failure never masks the committed (or rejected) ledger write.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from uuid import UUID

from apps.audit.constants import MAX_ERRORS_IN_PAYLOAD
from apps.audit.context import AuditContext
from apps.audit.hooks import emit_audit_event_best_effort
from apps.audit.models import AuditEvent
from apps.customs.clock import Clock, default_clock
from apps.customs.constants import REASON_IMPORT, REASON_MOVEMENT, REASON_OPENING_BALANCE
from apps.customs.coordinator import bulk_timeout, run_ledger_write, single_timeout
from apps.customs.exceptions import LedgerValidationError
from apps.customs.models import LedgerEntry, RecalcQueueItem
from apps.customs.propagation import apply_batch, propagate
from apps.customs.recalc_queue import enqueue_for_dates
from apps.customs.stock import StockAvailability, check_stock_availability, outgoing_shortfalls
from apps.customs.store import record_posted_lines, upsert_entry
from apps.customs.validators import (
    ParsedRow,
    ValidationOutcome,
    check_master_consistency,
    outcomes_to_row_errors,
    parse_rows,
    parse_stock_query,
    validate_batch,
)

logger = logging.getLogger(__name__)


@dataclass
class PostResult:
    entry: LedgerEntry
    touched: int
    queued: list[RecalcQueueItem] = field(default_factory=list)


@dataclass
class ImportResult:
    entries: list[LedgerEntry] = field(default_factory=list)
    touched: int = 0
    queued: list[RecalcQueueItem] = field(default_factory=list)
    by_type: dict[str, int] = field(default_factory=dict)

    @property
    def record_count(self) -> int:
        return len(self.entries)


# =========================
# Audit (best effort, after the transaction)
# =========================
def _audit(event_name: str, company_id: UUID, payload: dict, *, actor_id=None, description="", status=None):
    emit_audit_event_best_effort(
        event_name=event_name,
        payload=payload,
        context=AuditContext(company_id=company_id),
        actor_id=actor_id,
        description=description,
        status=status or AuditEvent.Status.SUCCESS,
    )


def _audit_rejected(company_id: UUID, operation: str, exc: LedgerValidationError, *, actor_id=None) -> None:
    _audit(
        "customs.import.rejected",
        company_id,
        {
            "operation": operation,
            "error_count": len(exc.row_errors),
            "errors": [e.as_dict() for e in exc.row_errors[:MAX_ERRORS_IN_PAYLOAD]],
        },
        actor_id=actor_id,
        description=exc.summary,
        status=AuditEvent.Status.FAILED,
    )


def _import_payload(result: ImportResult) -> dict:
    return {
        "record_count": result.record_count,
        "by_type": result.by_type,
        "touched": result.touched,
        "queued": len(result.queued),
    }


# =========================
# Validation helpers
# =========================
def _raise_on_shortfalls(entries: list[LedgerEntry], rows: list[ParsedRow]) -> None:
    errors = outgoing_shortfalls(entries, {(r.candidate.item_code, r.date): r.row for r in rows})
    if errors:
        raise LedgerValidationError(errors)


def _record_lines(company_id: UUID, rows: list[ParsedRow]) -> None:
    for r in rows:
        record_posted_lines(company_id, r.candidate.item_code, r.date, r.movement, document_number=r.document_number)


def _raise_on_outcomes(rows: list[ParsedRow], outcomes: dict[str, ValidationOutcome]) -> None:
    errors = outcomes_to_row_errors(rows, outcomes)
    if errors:
        raise LedgerValidationError(errors)


def _queue_targets(outcome_items) -> list[tuple[str, str, date]]:
    return [(item_type, item_code, earliest) for item_code, (item_type, earliest) in outcome_items]


def _run_batch(
    company_id: UUID,
    rows: list[ParsedRow],
    *,
    reason: str,
    clock: Clock,
    validate,
    post_lines: bool,
) -> ImportResult:
    def write() -> ImportResult:
        # validated inside the transaction: master data cannot change underneath
        validate(rows)

        outcome = apply_batch(company_id, [r.batch_record() for r in rows])
        _raise_on_shortfalls(outcome.entries, rows)
        if post_lines:
            _record_lines(company_id, rows)

        queued = enqueue_for_dates(
            company_id,
            _queue_targets(outcome.earliest_by_item.items()),
            reason=f"{reason} ({len(rows)} records)",
            clock=clock,
        )
        return ImportResult(
            entries=outcome.entries,
            touched=outcome.touched,
            queued=queued,
            by_type=dict(Counter(r.candidate.item_type for r in rows)),
        )

    return run_ledger_write(write, timeout=bulk_timeout())


# =========================
# Operations
# =========================
def post_movement(company_id: UUID, record: dict, *, clock: Clock | None = None, actor_id=None) -> PostResult:
    """
    Post one movement for (item, date) and cascade to every later row.
    Re-posting the same record leaves the ledger unchanged.
    """
    clock = clock or default_clock
    parsed = parse_rows([record], clock=clock)[0]
    code = parsed.candidate.item_code

    def write() -> PostResult:
        _raise_on_outcomes([parsed], check_master_consistency(company_id, [parsed.candidate]))

        entry = upsert_entry(company_id, code, parsed.date, parsed.movement)
        _raise_on_shortfalls([entry], [parsed])
        _record_lines(company_id, [parsed])

        touched = propagate(company_id, code, parsed.date)
        queued = enqueue_for_dates(
            company_id,
            [(parsed.candidate.item_type, code, parsed.date)],
            reason=f"{REASON_MOVEMENT}: {code}",
            clock=clock,
        )
        return PostResult(entry=entry, touched=touched, queued=queued)

    result = run_ledger_write(write, timeout=single_timeout())

    logger.info(
        "ledger movement posted company=%s item=%s date=%s ending=%s touched=%s",
        company_id,
        code,
        parsed.date,
        result.entry.ending,
        result.touched,
    )
    _audit(
        "customs.ledger.posted",
        company_id,
        {
            "item_code": code,
            "date": parsed.date.isoformat(),
            "beginning": str(result.entry.beginning),
            "ending": str(result.entry.ending),
            "touched": result.touched,
        },
        actor_id=actor_id,
    )
    return result


def import_movements(company_id: UUID, records, *, clock: Clock | None = None, actor_id=None) -> ImportResult:
    """
    All-or-nothing batch of movements. Rows are applied in (item, date) order
    and each item is cascaded once from its earliest date in the batch.
    """
    clock = clock or default_clock

    def validate(rows):
        _raise_on_outcomes(rows, check_master_consistency(company_id, [r.candidate for r in rows]))

    try:
        rows = parse_rows(records, clock=clock)
        result = _run_batch(
            company_id, rows, reason=REASON_IMPORT, clock=clock, validate=validate, post_lines=True
        )
    except LedgerValidationError as exc:
        logger.info("ledger import rejected company=%s errors=%s", company_id, len(exc.row_errors))
        _audit_rejected(company_id, "ledger.import", exc, actor_id=actor_id)
        raise

    logger.info(
        "ledger import committed company=%s records=%s touched=%s queued=%s",
        company_id,
        result.record_count,
        result.touched,
        len(result.queued),
    )
    _audit("customs.ledger.imported", company_id, _import_payload(result), actor_id=actor_id)
    return result


def import_opening_balances(company_id: UUID, records, *, clock: Clock | None = None, actor_id=None) -> ImportResult:
    """
    Opening-balance batch: the full duplicate/conflict rule set must pass
    for every row before anything is written.
    """
    clock = clock or default_clock

    def validate(rows):
        _raise_on_outcomes(rows, validate_batch(company_id, [r.candidate for r in rows]))

    try:
        rows = parse_rows(records, clock=clock, opening_balance=True)
        result = _run_batch(
            company_id, rows, reason=REASON_OPENING_BALANCE, clock=clock, validate=validate, post_lines=False
        )
    except LedgerValidationError as exc:
        logger.info("opening balance import rejected company=%s errors=%s", company_id, len(exc.row_errors))
        _audit_rejected(company_id, "opening_balance.import", exc, actor_id=actor_id)
        raise

    logger.info(
        "opening balance import committed company=%s records=%s queued=%s",
        company_id,
        result.record_count,
        len(result.queued),
    )
    _audit("customs.opening_balance.imported", company_id, _import_payload(result), actor_id=actor_id)
    return result


def validate_opening_balances(company_id: UUID, records, *, clock: Clock | None = None) -> dict[str, ValidationOutcome]:
    """Dry run: per-key outcomes, nothing written. Malformed rows still raise."""
    rows = parse_rows(records, clock=clock or default_clock, opening_balance=True)
    return validate_batch(company_id, [r.candidate for r in rows])


def stock_availability(company_id: UUID, payload, *, clock: Clock | None = None) -> StockAvailability:
    """Read-only: stock on hand for an item at a date against a requested quantity."""
    item_code, on, qty = parse_stock_query(payload, clock=clock)
    return check_stock_availability(company_id, item_code, on, qty)


def ledger_entries(company_id: UUID, item_code: str, *, start: date | None = None, end: date | None = None):
    qs = LedgerEntry.objects.chain(company_id, item_code)
    if start is not None:
        qs = qs.filter(date__gte=start)
    if end is not None:
        qs = qs.filter(date__lte=end)
    return qs
