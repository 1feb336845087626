"""
Balance Propagator.

Every later row's beginning depends transitively on every earlier ending, so
a write for (item, D) is followed by a full forward scan of the rows after D.
The scan is computed in memory over rows fetched once, persisted with one
bulk_update, then the resulting chain is checked against the ledger
invariants before the transaction is allowed to commit.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from django.utils import timezone

from apps.customs.exceptions import LedgerIntegrityError
from apps.customs.models import LedgerEntry
from apps.customs.store import Movement, ZERO, previous_entry, upsert_entry

logger = logging.getLogger(__name__)

DERIVED_FIELDS = ["beginning", "ending", "variant", "updated_at"]


def recompute_chain(entries: Iterable[LedgerEntry], seed: Decimal) -> list[LedgerEntry]:
    """
    Walk `entries` (ascending by date) carrying the running ending from `seed`.
    Returns only the rows whose derived fields changed.
    """
    changed: list[LedgerEntry] = []
    running = Decimal(seed)
    now = timezone.now()

    for entry in entries:
        before = (entry.beginning, entry.ending, entry.variant)
        entry.recompute(running)
        if (entry.beginning, entry.ending, entry.variant) != before:
            # bulk_update skips auto_now
            entry.updated_at = now
            changed.append(entry)
        running = Decimal(entry.ending)

    return changed


def assert_chain_consistent(entries: list[LedgerEntry], *, seed: Decimal | None = None) -> None:
    """
    Fail loudly if any row breaks ending = beginning + in - out + adj, or if a
    row's beginning is not the previous row's ending.
    """
    prev_ending = seed
    prev_date = None

    for entry in entries:
        if prev_date is not None and entry.date <= prev_date:
            raise LedgerIntegrityError(entry.item_code, entry.date, "rows are not strictly ordered by date")

        if Decimal(entry.ending) != entry.expected_ending():
            raise LedgerIntegrityError(
                entry.item_code,
                entry.date,
                f"ending {entry.ending} != {entry.expected_ending()}",
            )

        if prev_ending is not None and Decimal(entry.beginning) != Decimal(prev_ending):
            raise LedgerIntegrityError(
                entry.item_code,
                entry.date,
                f"beginning {entry.beginning} != previous ending {prev_ending}",
            )

        prev_ending = entry.ending
        prev_date = entry.date


def propagate(company_id: UUID, item_code: str, from_date: date) -> int:
    """
    Recompute every live row of `item_code` strictly after `from_date`,
    seeded with the ending of the row at `from_date` (the one just written).
    The row at `from_date` itself is never modified.

    Returns the number of rows whose derived fields changed.
    """
    anchor = (
        LedgerEntry.objects.chain(company_id, item_code)
        .filter(date=from_date)
        .first()
    )
    if anchor is None:
        # nothing written at from_date (e.g. soft-deleted): seed from the row before it
        prev = previous_entry(company_id, item_code, from_date)
        seed = Decimal(prev.ending) if prev else ZERO
    else:
        seed = Decimal(anchor.ending)

    later = list(
        LedgerEntry.objects.chain(company_id, item_code)
        .select_for_update()
        .filter(date__gt=from_date)
    )

    changed = recompute_chain(later, seed)
    if changed:
        LedgerEntry.objects.bulk_update(changed, DERIVED_FIELDS)

    assert_chain_consistent(later, seed=seed)

    logger.debug(
        "propagated company=%s item=%s from=%s scanned=%s touched=%s",
        company_id,
        item_code,
        from_date,
        len(later),
        len(changed),
    )
    return len(changed)


@dataclass(frozen=True)
class BatchRecord:
    item_code: str
    date: date
    movement: Movement
    row: int | None = None


@dataclass
class BatchOutcome:
    entries: list[LedgerEntry] = field(default_factory=list)
    touched: int = 0
    # item_code -> (item_type, earliest date written in this batch)
    earliest_by_item: "OrderedDict[str, tuple[str, date]]" = field(default_factory=OrderedDict)


def apply_batch(company_id: UUID, records: Iterable[BatchRecord]) -> BatchOutcome:
    """
    Write a batch and cascade once per affected item.

    Records are sorted by (item_code, date) and written in that order. The
    beginning of each row is the more recent of: the previous record of the
    same item in this batch, or the latest stored row before its date. The
    cascade then runs once per item from its earliest written date, which
    also re-derives later batch rows when stored rows sit between them.
    """
    ordered = sorted(records, key=lambda r: (r.item_code, r.date))
    outcome = BatchOutcome()

    # item_code -> (date, ending) of the last record written for it in this batch
    running: dict[str, tuple[date, Decimal]] = {}

    for record in ordered:
        beginning = None
        last = running.get(record.item_code)
        if last is not None:
            stored_prev = previous_entry(company_id, record.item_code, record.date)
            if stored_prev is None or stored_prev.date <= last[0]:
                beginning = last[1]
            # else: storage holds a row between the two batch dates; let the store read it

        entry = upsert_entry(company_id, record.item_code, record.date, record.movement, beginning=beginning)
        running[record.item_code] = (entry.date, Decimal(entry.ending))
        outcome.entries.append(entry)

        if record.item_code not in outcome.earliest_by_item:
            outcome.earliest_by_item[record.item_code] = (record.movement.item_type, record.date)

    for item_code, (_item_type, earliest) in outcome.earliest_by_item.items():
        outcome.touched += propagate(company_id, item_code, earliest)

    # rows returned to the caller reflect the cascaded balances
    ids = [e.id for e in outcome.entries]
    fresh = {e.id: e for e in LedgerEntry.objects.filter(id__in=ids)}
    outcome.entries = [fresh[i] for i in ids]

    return outcome


def check_chain(company_id: UUID, item_code: str) -> list[LedgerEntry]:
    """Rows whose stored balances differ from a replay from the first entry. Nothing is saved."""
    entries = list(LedgerEntry.objects.chain(company_id, item_code))
    return recompute_chain(entries, ZERO)


def rebuild_chain(company_id: UUID, item_code: str) -> int:
    """
    Replay the whole chain of `item_code` from beginning 0 and persist the
    corrected balances. Must run inside the coordinator's transaction.
    """
    entries = list(LedgerEntry.objects.chain(company_id, item_code).select_for_update())

    changed = recompute_chain(entries, ZERO)
    if changed:
        LedgerEntry.objects.bulk_update(changed, DERIVED_FIELDS)

    assert_chain_consistent(entries, seed=ZERO)

    if changed:
        logger.info("rebuilt chain company=%s item=%s corrected=%s", company_id, item_code, len(changed))
    return len(changed)
