"""
Stock availability read from the ledger.

The stock of an item at a date is the ending of that date's row, or the
ending of the latest earlier row when the date has none.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from apps.customs.exceptions import RowError
from apps.customs.models import LedgerEntry
from apps.customs.store import ZERO, previous_ending

logger = logging.getLogger(__name__)


def _plain(value: Decimal) -> str:
    """10.000000 -> "10"."""
    return format(value.normalize(), "f")


@dataclass(frozen=True)
class StockAvailability:
    item_code: str
    on: date
    current_stock: Decimal
    requested: Decimal

    @property
    def available(self) -> bool:
        return self.current_stock >= self.requested

    @property
    def shortfall(self) -> Decimal:
        return max(self.requested - self.current_stock, ZERO)

    def as_dict(self) -> dict:
        return {
            "itemCode": self.item_code,
            "date": self.on.isoformat(),
            "currentStock": str(self.current_stock),
            "qtyRequested": str(self.requested),
            "available": self.available,
            "shortfall": str(self.shortfall) if not self.available else None,
        }


def stock_at(company_id: UUID, item_code: str, on: date) -> Decimal:
    entry = LedgerEntry.objects.chain(company_id, item_code).filter(date=on).first()
    if entry is not None:
        return Decimal(entry.ending)
    return previous_ending(company_id, item_code, on)


def check_stock_availability(company_id: UUID, item_code: str, on: date, qty: Decimal) -> StockAvailability:
    return StockAvailability(
        item_code=item_code,
        on=on,
        current_stock=stock_at(company_id, item_code, on),
        requested=Decimal(qty),
    )


def outgoing_shortfalls(entries: list[LedgerEntry], rows_by_key: dict[tuple[str, date], int | None]) -> list[RowError]:
    """
    Row errors for written entries whose outgoing exceeds the stock on hand
    that day. Checked after the write so same-day incoming counts.
    """
    errors: list[RowError] = []

    for entry in entries:
        outgoing = Decimal(entry.outgoing)
        if outgoing <= 0 or Decimal(entry.ending) >= 0:
            continue

        check = StockAvailability(
            item_code=entry.item_code,
            on=entry.date,
            current_stock=Decimal(entry.ending) + outgoing,
            requested=outgoing,
        )
        logger.info(
            "outgoing exceeds stock company=%s item=%s date=%s available=%s requested=%s",
            entry.company_id,
            entry.item_code,
            entry.date,
            check.current_stock,
            check.requested,
        )
        errors.append(
            RowError(
                row=rows_by_key.get((entry.item_code, entry.date)),
                field="outgoing",
                reason=(
                    f"Insufficient stock for {entry.item_code} on {entry.date.isoformat()}. "
                    f"Available: {_plain(check.current_stock)}, requested: {_plain(check.requested)}"
                ),
                item_code=entry.item_code,
            )
        )

    return errors
