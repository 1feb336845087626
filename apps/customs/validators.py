"""
Duplicate/Conflict Validator and row parsing for ledger writes.

Batch rules (all checked independently and accumulated per candidate):
1. identical (code, uom, name, type) already on the ledger
2. same (code, uom) on the ledger with a different name
3. same (code, uom) on the ledger with a different type
4. item code already has posted incoming/outgoing movements
5. the same normalized key appears more than once in the batch
6. item code already kept on the ledger (or elsewhere in the batch) in another UOM
Rules 2 and 3 only compare rows with the same (code, uom). Rule 6 exists
because a ledger chain is keyed by item code alone, so one code carries one
unit of measure.

All database lookups run once per batch, keyed by the set of item codes.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from uuid import UUID

from django.conf import settings
from django.utils.dateparse import parse_date, parse_datetime

from apps.customs.clock import Clock, default_clock
from apps.customs.constants import LEDGER_DOCUMENT, AdjustmentType
from apps.customs.exceptions import LedgerValidationError, RowError
from apps.customs.models import ItemType, LedgerEntry, PostedMovement
from apps.customs.normalization import item_key, normalize_text, sanitize_remarks
from apps.customs.propagation import BatchRecord
from apps.customs.store import Movement

MAX_DECIMAL_PLACES = 6
MAX_DOCUMENT_NUMBER_LENGTH = 64


@dataclass(frozen=True)
class ItemCandidate:
    item_code: str
    uom: str
    item_name: str
    item_type: str

    @classmethod
    def normalized(cls, *, item_code, uom, item_name, item_type) -> "ItemCandidate":
        return cls(
            item_code=normalize_text(item_code),
            uom=normalize_text(uom),
            item_name=normalize_text(item_name),
            item_type=normalize_text(item_type),
        )

    @property
    def key(self) -> str:
        return item_key(self.item_code, self.uom, self.item_name, self.item_type)


@dataclass(frozen=True)
class ItemError:
    item_code: str
    reason: str


@dataclass
class ValidationOutcome:
    errors: list[ItemError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [{"itemCode": e.item_code, "reason": e.reason} for e in self.errors],
        }


# =========================
# Batch lookups
# =========================
def _existing_by_code_and_uom(company_id: UUID, codes: set[str]) -> dict[tuple[str, str], list[ItemCandidate]]:
    rows = (
        LedgerEntry.objects.active()
        .filter(company_id=company_id, item_code__in=codes)
        .values_list("item_code", "uom", "item_name", "item_type")
        .distinct()
    )
    grouped: dict[tuple[str, str], list[ItemCandidate]] = defaultdict(list)
    for code, uom, name, item_type in rows:
        existing = ItemCandidate.normalized(item_code=code, uom=uom, item_name=name, item_type=item_type)
        if existing not in grouped[(existing.item_code, existing.uom)]:
            grouped[(existing.item_code, existing.uom)].append(existing)
    return grouped


def _posted_directions(company_id: UUID, codes: set[str]) -> dict[str, set[str]]:
    rows = (
        PostedMovement.objects.filter(company_id=company_id, item_code__in=codes, deleted_at__isnull=True)
        .values_list("item_code", "direction")
        .distinct()
    )
    posted: dict[str, set[str]] = defaultdict(set)
    for code, direction in rows:
        posted[normalize_text(code)].add(direction)
    return posted


def _uoms_by_code(existing: Mapping[tuple[str, str], list[ItemCandidate]]) -> dict[str, set[str]]:
    uoms: dict[str, set[str]] = defaultdict(set)
    for code, uom in existing:
        uoms[code].add(uom)
    return uoms


def _uom_conflicts(candidate: ItemCandidate, ledger_uoms: set[str], batch_uoms: set[str]) -> list[ItemError]:
    errors: list[ItemError] = []

    other_ledger = sorted(ledger_uoms - {candidate.uom})
    if other_ledger:
        errors.append(
            ItemError(
                candidate.item_code,
                f"Item {candidate.item_code} is already kept in UOM {', '.join(other_ledger)}; "
                f"cannot post it in {candidate.uom}",
            )
        )

    other_batch = sorted(batch_uoms - {candidate.uom})
    if other_batch:
        errors.append(
            ItemError(
                candidate.item_code,
                f"Item {candidate.item_code} appears in the batch with another UOM ({', '.join(other_batch)})",
            )
        )

    return errors


def _batch_uoms(candidates: Iterable[ItemCandidate]) -> dict[str, set[str]]:
    uoms: dict[str, set[str]] = defaultdict(set)
    for c in candidates:
        uoms[c.item_code].add(c.uom)
    return uoms


def _master_conflicts(candidate: ItemCandidate, existing: list[ItemCandidate]) -> list[ItemError]:
    errors: list[ItemError] = []

    other_name = next((e for e in existing if e.item_name != candidate.item_name), None)
    if other_name is not None:
        errors.append(
            ItemError(
                candidate.item_code,
                f"Item with code {candidate.item_code} and UOM {candidate.uom} already exists "
                f"with a different name ({other_name.item_name})",
            )
        )

    other_type = next((e for e in existing if e.item_type != candidate.item_type), None)
    if other_type is not None:
        errors.append(
            ItemError(
                candidate.item_code,
                f"Item with code {candidate.item_code} and UOM {candidate.uom} already exists "
                f"with a different type ({other_type.item_type})",
            )
        )

    return errors


def validate_batch(company_id: UUID, candidates: Iterable[ItemCandidate]) -> dict[str, ValidationOutcome]:
    """
    Opening-balance validation. Returns one outcome per normalized key
    (item_code|uom|item_name|item_type).
    """
    normalized = [
        ItemCandidate.normalized(
            item_code=c.item_code, uom=c.uom, item_name=c.item_name, item_type=c.item_type
        )
        for c in candidates
    ]
    results: dict[str, ValidationOutcome] = {}
    if not normalized:
        return results

    occurrences = Counter(c.key for c in normalized)
    codes = {c.item_code for c in normalized}

    existing = _existing_by_code_and_uom(company_id, codes)
    posted = _posted_directions(company_id, codes)
    ledger_uoms = _uoms_by_code(existing)
    batch_uoms = _batch_uoms(normalized)

    for candidate in normalized:
        if candidate.key in results:
            continue
        outcome = ValidationOutcome()

        if occurrences[candidate.key] > 1:
            outcome.errors.append(ItemError(candidate.item_code, "Complete duplicate within the batch"))

        same_code_uom = existing.get((candidate.item_code, candidate.uom), [])
        if candidate in same_code_uom:
            outcome.errors.append(ItemError(candidate.item_code, "Item already exists with identical data"))
        outcome.errors.extend(_master_conflicts(candidate, same_code_uom))
        outcome.errors.extend(
            _uom_conflicts(candidate, ledger_uoms.get(candidate.item_code, set()), batch_uoms[candidate.item_code])
        )

        directions = posted.get(candidate.item_code, set())
        if PostedMovement.Direction.INCOMING in directions:
            outcome.errors.append(
                ItemError(candidate.item_code, f"Item {candidate.item_code} already has incoming transactions")
            )
        if PostedMovement.Direction.OUTGOING in directions:
            outcome.errors.append(
                ItemError(candidate.item_code, f"Item {candidate.item_code} already has outgoing transactions")
            )

        results[candidate.key] = outcome

    return results


def check_master_consistency(company_id: UUID, candidates: Iterable[ItemCandidate]) -> dict[str, ValidationOutcome]:
    """Name/type/unit consistency (rules 2, 3 and 6); used for ordinary movements."""
    normalized = list(candidates)
    results: dict[str, ValidationOutcome] = {}
    if not normalized:
        return results

    existing = _existing_by_code_and_uom(company_id, {c.item_code for c in normalized})
    ledger_uoms = _uoms_by_code(existing)
    batch_uoms = _batch_uoms(normalized)
    for candidate in normalized:
        if candidate.key not in results:
            errors = _master_conflicts(candidate, existing.get((candidate.item_code, candidate.uom), []))
            errors.extend(
                _uom_conflicts(candidate, ledger_uoms.get(candidate.item_code, set()), batch_uoms[candidate.item_code])
            )
            results[candidate.key] = ValidationOutcome(errors=errors)
    return results


def outcomes_to_row_errors(rows: list["ParsedRow"], outcomes: Mapping[str, ValidationOutcome]) -> list[RowError]:
    errors: list[RowError] = []
    for parsed in rows:
        outcome = outcomes.get(parsed.candidate.key)
        if outcome is None or outcome.valid:
            continue
        for err in outcome.errors:
            errors.append(RowError(row=parsed.row, field="itemCode", reason=err.reason, item_code=err.item_code))
    return errors


# =========================
# Row parsing (input boundary)
# =========================
VALID_ITEM_TYPES = set(ItemType.values)


@dataclass(frozen=True)
class ParsedRow:
    row: int
    candidate: ItemCandidate
    date: date
    movement: Movement
    document_number: str = LEDGER_DOCUMENT

    def batch_record(self) -> BatchRecord:
        return BatchRecord(item_code=self.candidate.item_code, date=self.date, movement=self.movement, row=self.row)


class _RowRejected(Exception):
    def __init__(self, field: str, reason: str):
        super().__init__(reason)
        self.field = field
        self.reason = reason


def _pick(record: Mapping, *names):
    for name in names:
        if name in record and record[name] not in (None, ""):
            return record[name]
    return None


def parse_ledger_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    try:
        parsed = parse_date(text)
        if parsed is None:
            dt = parse_datetime(text)
            parsed = dt.date() if dt else None
    except ValueError:
        raise ValueError("Invalid date")
    if parsed is not None:
        return parsed

    try:
        return datetime.strptime(text, "%m/%d/%Y").date()
    except ValueError:
        raise ValueError("Invalid date format. Expected YYYY-MM-DD or MM/DD/YYYY")


def parse_quantity(value, field: str) -> Decimal | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise _RowRejected(field, f"{field} must be a number")
    try:
        qty = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise _RowRejected(field, f"{field} must be a number")
    if not qty.is_finite():
        raise _RowRejected(field, f"{field} must be a finite number")
    if qty < 0:
        raise _RowRejected(field, f"{field} must not be negative")
    if qty.as_tuple().exponent < -MAX_DECIMAL_PLACES:
        raise _RowRejected(field, f"{field} allows at most {MAX_DECIMAL_PLACES} decimal places")
    return qty


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _is_empty_row(record: Mapping) -> bool:
    return all(
        _is_blank(_pick(record, *names))
        for names in (
            ("itemType", "item_type"),
            ("itemCode", "item_code"),
            ("itemName", "item_name"),
            ("uom",),
            ("date", "balanceDate", "balance_date"),
            ("qty",),
            ("incoming",),
            ("outgoing",),
            ("adjustment",),
            ("stockCount", "stock_count"),
        )
    )


def _parse_item(record: Mapping) -> ItemCandidate:
    item_type = normalize_text(_pick(record, "itemType", "item_type"))
    if not item_type:
        raise _RowRejected("itemType", "Item Type is required")
    if item_type not in VALID_ITEM_TYPES:
        valid = ", ".join(ItemType.values)
        raise _RowRejected("itemType", f"Invalid item type '{item_type}'. Valid types: {valid}")

    candidate = ItemCandidate.normalized(
        item_code=_pick(record, "itemCode", "item_code"),
        uom=_pick(record, "uom"),
        item_name=_pick(record, "itemName", "item_name"),
        item_type=item_type,
    )
    if not candidate.item_code:
        raise _RowRejected("itemCode", "Item Code is required")
    if not candidate.item_name:
        raise _RowRejected("itemName", "Item Name is required")
    if not candidate.uom:
        raise _RowRejected("uom", "UOM is required")
    return candidate


def _parse_date(record: Mapping, today: date) -> date:
    raw = _pick(record, "date", "balanceDate", "balance_date")
    if raw is None:
        raise _RowRejected("date", "Date is required")
    try:
        on = parse_ledger_date(raw)
    except ValueError as exc:
        raise _RowRejected("date", str(exc))
    if on > today:
        raise _RowRejected("date", "Date cannot be in the future")
    return on


def _parse_remarks(record: Mapping) -> str | None:
    try:
        return sanitize_remarks(_pick(record, "remarks"))
    except ValueError as exc:
        raise _RowRejected("remarks", str(exc))


def _parse_document_number(record: Mapping) -> str:
    number = normalize_text(_pick(record, "documentNumber", "document_number"))
    if len(number) > MAX_DOCUMENT_NUMBER_LENGTH:
        raise _RowRejected("documentNumber", f"Document number must not exceed {MAX_DOCUMENT_NUMBER_LENGTH} characters")
    return number or LEDGER_DOCUMENT


def _parse_movement(record: Mapping, candidate: ItemCandidate) -> Movement:
    incoming = parse_quantity(_pick(record, "incoming"), "incoming")
    outgoing = parse_quantity(_pick(record, "outgoing"), "outgoing")
    adjustment = parse_quantity(_pick(record, "adjustment"), "adjustment")
    stock_count = parse_quantity(_pick(record, "stockCount", "stock_count"), "stockCount")

    if not any(q is not None and q > 0 for q in (incoming, outgoing, adjustment, stock_count)):
        raise _RowRejected("incoming", "At least one quantity must be greater than 0")

    adjustment_type = normalize_text(_pick(record, "adjustmentType", "adjustment_type") or AdjustmentType.GAIN).upper()
    if adjustment_type not in (AdjustmentType.GAIN, AdjustmentType.LOSS):
        raise _RowRejected("adjustmentType", "Adjustment type must be GAIN or LOSS")
    if adjustment is not None and adjustment_type == AdjustmentType.LOSS:
        adjustment = -adjustment

    return Movement(
        item_type=candidate.item_type,
        item_name=candidate.item_name,
        uom=candidate.uom,
        incoming=incoming,
        outgoing=outgoing,
        adjustment=adjustment,
        stock_count=stock_count,
        remarks=_parse_remarks(record),
    )


def _parse_opening_balance(record: Mapping, candidate: ItemCandidate) -> Movement:
    qty = parse_quantity(_pick(record, "qty"), "qty")
    if qty is None:
        raise _RowRejected("qty", "Qty is required")
    if qty <= 0:
        raise _RowRejected("qty", "Qty must be greater than 0")

    return Movement(
        item_type=candidate.item_type,
        item_name=candidate.item_name,
        uom=candidate.uom,
        incoming=qty,
        remarks=_parse_remarks(record),
    )


def max_batch_records() -> int:
    return int(settings.CUSTOMS_LEDGER.get("MAX_BATCH_RECORDS", 1000))


def parse_rows(
    records,
    *,
    clock: Clock | None = None,
    opening_balance: bool = False,
) -> list[ParsedRow]:
    """
    Parse raw payload rows (camelCase or snake_case keys). Rows are numbered
    from 1; completely empty rows are skipped. Every failure is collected and
    raised together, so nothing is written unless every row is valid.
    """
    clock = clock or default_clock

    if not isinstance(records, (list, tuple)):
        raise LedgerValidationError(
            [RowError(None, "records", "Invalid request body. Expected { records: Array }")]
        )
    if not records:
        raise LedgerValidationError([RowError(None, "records", "No records provided")])

    limit = max_batch_records()
    if len(records) > limit:
        raise LedgerValidationError(
            [RowError(None, "records", f"Batch size exceeds maximum limit of {limit} records")]
        )

    today = clock.today()
    parsed: list[ParsedRow] = []
    errors: list[RowError] = []
    first_seen: dict[tuple[str, date], ParsedRow] = {}

    for index, record in enumerate(records):
        row = index + 1
        if not isinstance(record, Mapping):
            errors.append(RowError(row, "record", "Record must be an object"))
            continue
        if _is_empty_row(record):
            continue

        try:
            candidate = _parse_item(record)
            on = _parse_date(record, today)
            document_number = _parse_document_number(record)
            if opening_balance:
                movement = _parse_opening_balance(record, candidate)
            else:
                movement = _parse_movement(record, candidate)
        except _RowRejected as rejected:
            code = normalize_text(_pick(record, "itemCode", "item_code")) or None
            errors.append(RowError(row, rejected.field, rejected.reason, code))
            continue

        current = ParsedRow(row=row, candidate=candidate, date=on, movement=movement, document_number=document_number)

        # one ledger row per (item, date): a second record would silently overwrite the first
        earlier = first_seen.get((candidate.item_code, on))
        if earlier is not None:
            # identical opening-balance keys are reported by the batch validator instead
            if not (opening_balance and earlier.candidate.key == candidate.key):
                errors.append(
                    RowError(
                        row,
                        "date",
                        f"Duplicate item {candidate.item_code} on {on.isoformat()} in batch "
                        f"(first seen at row {earlier.row})",
                        candidate.item_code,
                    )
                )
                continue
        else:
            first_seen[(candidate.item_code, on)] = current

        parsed.append(current)

    if errors:
        raise LedgerValidationError(errors)
    if not parsed:
        raise LedgerValidationError([RowError(None, "records", "No valid records found to import")])

    return parsed


def parse_stock_query(payload, *, clock: Clock | None = None) -> tuple[str, date, Decimal]:
    """(item_code, date, qty_requested) of a stock availability check."""
    if not isinstance(payload, Mapping):
        raise LedgerValidationError([RowError(None, "body", "Request body must be an object")])

    errors: list[RowError] = []
    item_code = normalize_text(_pick(payload, "itemCode", "item_code"))
    if not item_code:
        errors.append(RowError(None, "itemCode", "Item Code is required"))

    on = None
    try:
        on = _parse_date(payload, (clock or default_clock).today())
    except _RowRejected as rejected:
        errors.append(RowError(None, rejected.field, rejected.reason, item_code or None))

    qty = None
    try:
        qty = parse_quantity(_pick(payload, "qtyRequested", "qty_requested", "qty"), "qtyRequested")
        if qty is None or qty <= 0:
            raise _RowRejected("qtyRequested", "qtyRequested must be greater than 0")
    except _RowRejected as rejected:
        errors.append(RowError(None, rejected.field, rejected.reason, item_code or None))

    if errors:
        raise LedgerValidationError(errors)
    return item_code, on, qty
