from apps.tenancy.context import (
    set_active_scope,
    get_active_company_id,
    clear_active_scope,
    parse_company_id,
)

__all__ = [
    "set_active_scope",
    "get_active_company_id",
    "clear_active_scope",
    "parse_company_id",
]
