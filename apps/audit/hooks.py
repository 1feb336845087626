from __future__ import annotations

import logging

from django.core.exceptions import ValidationError

from .context import AUDIT_EMIT_ALLOWED
from .events import assert_event_registered
from .guards import run_guards
from .models import AuditEvent

logger = logging.getLogger(__name__)


def emit_audit_event(
    *,
    event_name: str,
    payload: dict,
    context,
    actor_id=None,
    description: str = "",
    status: str = AuditEvent.Status.SUCCESS,
):
    # Registry enforcement: unknown event => hard fail
    try:
        assert_event_registered(event_name)
    except KeyError as exc:
        raise ValidationError(
            f"Unknown audit event '{event_name}'. Register it in apps.audit.events."
        ) from exc

    run_guards(event_name=event_name, payload=payload, context=context)

    token = AUDIT_EMIT_ALLOWED.set(True)
    try:
        return AuditEvent.objects.create(
            event_name=event_name,
            status=status,
            description=description[:512],
            company_id=context.company_id,
            actor_id=str(actor_id) if actor_id is not None else None,
            payload=payload or {},
        )
    finally:
        AUDIT_EMIT_ALLOWED.reset(token)


def emit_audit_event_best_effort(**kwargs):
    """
    Emit OUTSIDE the ledger transaction: the write it describes is already
    committed (or rejected), so an audit failure must not mask that outcome.
    """
    try:
        return emit_audit_event(**kwargs)
    except Exception:
        logger.exception("audit emit failed event=%s", kwargs.get("event_name"))
        return None
