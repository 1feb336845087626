"""
Ledger Entry Store: the single writer of LedgerEntry rows.

upsert_entry() inserts or updates the row for (company, item, date). The
beginning balance is always derived from the most recent earlier live row
(or supplied by the batch path from its running balance); callers never
set it. Propagation to later rows is NOT done here.

record_posted_lines() keeps the PostedMovement lines of ordinary movements
in step with the ledger, inside the same transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from django.utils import timezone

from apps.customs.models import LedgerEntry, PostedMovement

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class Movement:
    """
    Quantities posted for one (item, date).

    None means "not supplied": a new row stores 0 (stock_count stays null),
    an existing row keeps its current value. Supplied values replace the
    stored ones, so re-posting the same facts is idempotent.
    """

    item_type: str
    item_name: str
    uom: str
    incoming: Decimal | None = None
    outgoing: Decimal | None = None
    adjustment: Decimal | None = None
    stock_count: Decimal | None = None
    remarks: str | None = None


def previous_entry(company_id: UUID, item_code: str, on: date) -> LedgerEntry | None:
    return (
        LedgerEntry.objects.chain(company_id, item_code)
        .filter(date__lt=on)
        .order_by("-date")
        .first()
    )


def previous_ending(company_id: UUID, item_code: str, on: date) -> Decimal:
    prev = previous_entry(company_id, item_code, on)
    return Decimal(prev.ending) if prev else ZERO


def _apply_movement(entry: LedgerEntry, movement: Movement) -> None:
    entry.item_type = movement.item_type
    entry.item_name = movement.item_name
    entry.uom = movement.uom

    for field in ("incoming", "outgoing", "adjustment"):
        value = getattr(movement, field)
        if value is not None:
            setattr(entry, field, Decimal(value))
    if movement.stock_count is not None:
        entry.stock_count = Decimal(movement.stock_count)
    if movement.remarks is not None:
        entry.remarks = movement.remarks


def upsert_entry(
    company_id: UUID,
    item_code: str,
    on: date,
    movement: Movement,
    *,
    beginning: Decimal | None = None,
) -> LedgerEntry:
    """
    Write the (company, item, date) row and return it with derived balances.

    `beginning` is only passed by the batch path, which already knows the
    running ending of the preceding row; otherwise it is read from storage.
    Must run inside the coordinator's transaction.
    """
    existing = (
        LedgerEntry.objects.select_for_update()
        .filter(company_id=company_id, item_code=item_code, date=on)
        .first()
    )

    if beginning is None:
        beginning = previous_ending(company_id, item_code, on)

    if existing is None:
        entry = LedgerEntry(company_id=company_id, item_code=item_code, date=on)
        created = True
    else:
        entry = existing
        # a soft-deleted row for the same key is revived, never duplicated
        entry.deleted_at = None
        created = False

    _apply_movement(entry, movement)
    entry.recompute(beginning)
    entry.full_clean(validate_unique=False, validate_constraints=False)
    entry.save()

    logger.debug(
        "ledger entry %s company=%s item=%s date=%s beginning=%s ending=%s",
        "created" if created else "updated",
        company_id,
        item_code,
        on,
        entry.beginning,
        entry.ending,
    )
    return entry


def record_posted_lines(
    company_id: UUID,
    item_code: str,
    on: date,
    movement: Movement,
    *,
    document_number: str,
) -> list[PostedMovement]:
    """
    Upsert the incoming/outgoing lines of one posted movement, keyed by
    (company, item, direction, date, document). A direction supplied as 0
    soft-deletes its line; a direction not supplied is left alone.
    Opening balances never come through here.
    """
    lines: list[PostedMovement] = []

    for direction, qty in (
        (PostedMovement.Direction.INCOMING, movement.incoming),
        (PostedMovement.Direction.OUTGOING, movement.outgoing),
    ):
        if qty is None:
            continue

        line = (
            PostedMovement.objects.select_for_update()
            .filter(
                company_id=company_id,
                item_code=item_code,
                direction=direction,
                posted_on=on,
                document_number=document_number,
            )
            .first()
        )

        if Decimal(qty) <= 0:
            if line is not None and line.deleted_at is None:
                line.deleted_at = timezone.now()
                line.save(update_fields=["deleted_at"])
            continue

        if line is None:
            line = PostedMovement(
                company_id=company_id,
                item_code=item_code,
                direction=direction,
                posted_on=on,
                document_number=document_number,
            )
        line.item_type = movement.item_type
        line.item_name = movement.item_name
        line.uom = movement.uom
        line.qty = Decimal(qty)
        line.deleted_at = None
        line.save()
        lines.append(line)

    return lines
