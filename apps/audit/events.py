from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class AuditEventSpec:
    """
    Central registry entry for an audit event.

    - name: canonical identifier stored in AuditEvent.event_name
    - max_payload_bytes_override: optional per-event payload limit override
    - system_only: if True, may only be emitted from SYSTEM contexts (enforced by guards)
    - notes: maintainer hint
    """

    name: str
    max_payload_bytes_override: Optional[int] = None
    system_only: bool = False
    notes: str = ""


# Single source of truth: ALL audit event names MUST be registered here.
EVENTS: Dict[str, AuditEventSpec] = {
    # --- customs ledger writes ---
    "customs.ledger.posted": AuditEventSpec(
        name="customs.ledger.posted",
        notes="Single movement posted to the ledger (after commit).",
    ),
    "customs.ledger.imported": AuditEventSpec(
        name="customs.ledger.imported",
        notes="Movement batch imported to the ledger (after commit).",
    ),
    "customs.opening_balance.imported": AuditEventSpec(
        name="customs.opening_balance.imported",
        notes="Opening-balance batch imported to the ledger (after commit).",
    ),
    "customs.import.rejected": AuditEventSpec(
        name="customs.import.rejected",
        max_payload_bytes_override=32 * 1024,
        notes="Batch rejected by validation before any write.",
    ),

    # --- maintenance ---
    "customs.ledger.rebuilt": AuditEventSpec(
        name="customs.ledger.rebuilt",
        notes="rebuild_ledger_balances corrected stored balances for a company.",
    ),
    "customs.recalc.requeued": AuditEventSpec(
        name="customs.recalc.requeued",
        notes="FAILED recalculation rows moved back to PENDING.",
    ),
}


def get_event_spec(event_name: str) -> Optional[AuditEventSpec]:
    return EVENTS.get(event_name)


def assert_event_registered(event_name: str) -> AuditEventSpec:
    spec = EVENTS.get(event_name)
    if not spec:
        raise KeyError(event_name)
    return spec
