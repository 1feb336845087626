"""
Typed failures of the ledger write path.

Callers branch on the class, never on the message:

- LedgerValidationError: rejected before any write (HTTP 400)
- LedgerConflictError: serialization conflict, caller may retry (HTTP 409)
- LedgerTimeoutError: transaction budget exceeded, rolled back (HTTP 504)
- LedgerIntegrityError: balance invariant broken after propagation (bug)
"""
from __future__ import annotations

from dataclasses import asdict, dataclass

from django.core.exceptions import ValidationError


@dataclass(frozen=True)
class RowError:
    row: int | None
    field: str
    reason: str
    item_code: str | None = None

    def as_dict(self) -> dict:
        return asdict(self)


class LedgerValidationError(ValidationError):
    code = "VALIDATION_FAILED"

    def __init__(self, row_errors: list[RowError], message: str | None = None):
        self.row_errors = list(row_errors)
        self.summary = message or f"Validation failed for {len(self.row_errors)} row(s)"
        super().__init__([e.reason for e in self.row_errors] or [self.summary])

    def __str__(self) -> str:
        return self.summary


class LedgerError(Exception):
    code = "LEDGER_ERROR"


class LedgerConflictError(LedgerError):
    code = "TRANSACTION_CONFLICT"

    def __init__(self, message: str = "Transaction conflict detected. Please retry."):
        super().__init__(message)


class LedgerTimeoutError(LedgerError):
    code = "TRANSACTION_TIMEOUT"

    def __init__(self, timeout_seconds: float, elapsed_seconds: float | None = None):
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = elapsed_seconds
        super().__init__(f"Ledger transaction exceeded {timeout_seconds}s budget")


class LedgerIntegrityError(LedgerError):
    code = "LEDGER_INTEGRITY"

    def __init__(self, item_code: str, entry_date, detail: str):
        self.item_code = item_code
        self.entry_date = entry_date
        super().__init__(f"Ledger chain broken for {item_code} at {entry_date}: {detail}")
