from __future__ import annotations

# =========================
# Payload Guard Limits
# =========================
MAX_PAYLOAD_BYTES: int = 8 * 1024  # default, see AuditEventSpec.max_payload_bytes_override
MAX_ERRORS_IN_PAYLOAD: int = 50

# =========================
# Required Keys Per Event
# =========================
# Event names MUST also be registered in apps.audit.events.
REQUIRED_PAYLOAD_KEYS: dict[str, set[str]] = {
    "customs.ledger.posted": {"item_code", "date", "beginning", "ending", "touched"},
    "customs.ledger.imported": {"record_count", "by_type", "touched", "queued"},
    "customs.opening_balance.imported": {"record_count", "by_type", "touched", "queued"},
    "customs.import.rejected": {"operation", "error_count", "errors"},
    "customs.ledger.rebuilt": {"chains", "corrected"},
    "customs.recalc.requeued": {"requeued"},
}
