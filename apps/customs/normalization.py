from __future__ import annotations

from django.conf import settings
from django.utils.html import escape


def normalize_text(value) -> str:
    """Trim and collapse internal whitespace: ' RM  001 ' -> 'RM 001'."""
    if value is None:
        return ""
    return " ".join(str(value).split())


def item_key(item_code: str, uom: str, item_name: str, item_type: str) -> str:
    return f"{item_code}|{uom}|{item_name}|{item_type}"


def remarks_max_length() -> int:
    return int(settings.CUSTOMS_LEDGER.get("REMARKS_MAX_LENGTH", 1000))


def sanitize_remarks(remarks) -> str | None:
    """
    Trim, cap and HTML-escape free text.
    Raises ValueError when over the length cap (checked before escaping).
    """
    if remarks is None:
        return None
    trimmed = str(remarks).strip()
    if not trimmed:
        return None

    limit = remarks_max_length()
    if len(trimmed) > limit:
        raise ValueError(f"Remarks must not exceed {limit} characters")

    return escape(trimmed)
