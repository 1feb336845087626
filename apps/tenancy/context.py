import contextvars
from uuid import UUID

active_company_id = contextvars.ContextVar("active_company_id", default=None)


def set_active_scope(company_id):
    active_company_id.set(company_id)


def get_active_company_id():
    return active_company_id.get()


def clear_active_scope():
    set_active_scope(None)


def parse_company_id(raw) -> UUID | None:
    """UUID from a header/argument value; None when missing or malformed (fail-closed)."""
    if raw in (None, ""):
        return None
    if isinstance(raw, UUID):
        return raw
    try:
        return UUID(str(raw).strip())
    except ValueError:
        return None
