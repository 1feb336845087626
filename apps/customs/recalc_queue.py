"""
Deferred Recalculation Queue (producer side).

enqueue() is an upsert on (company_id, item_type, item_code, recalc_date):
an active (non-DONE) row is reset to PENDING with the new priority/reason and
a fresh queued_at; otherwise a new row is created. It must be called inside
the same transaction as the ledger write that needs the recalculation.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import date
from uuid import UUID

from django.db import transaction
from django.utils import timezone

from apps.audit.context import AuditContext
from apps.audit.hooks import emit_audit_event_best_effort
from apps.customs.clock import Clock, default_clock
from apps.customs.constants import RecalcPriority
from apps.customs.models import RecalcQueueItem

logger = logging.getLogger(__name__)


def priority_for(on: date, *, clock: Clock | None = None) -> int:
    """Backdated (before today) -> 0; today -> -1. Lower runs first."""
    today = (clock or default_clock).today()
    if on < today:
        return RecalcPriority.BACKDATED
    return RecalcPriority.SAME_DAY


def enqueue(
    company_id: UUID,
    item_type: str,
    item_code: str,
    recalc_date: date,
    *,
    priority: int,
    reason: str,
    now=None,
) -> RecalcQueueItem:
    now = now or timezone.now()
    reason = reason[:255]

    item = (
        RecalcQueueItem.objects.select_for_update()
        .filter(
            company_id=company_id,
            item_type=item_type,
            item_code=item_code,
            recalc_date=recalc_date,
        )
        .exclude(status=RecalcQueueItem.Status.DONE)
        .first()
    )

    if item is None:
        item = RecalcQueueItem.objects.create(
            company_id=company_id,
            item_type=item_type,
            item_code=item_code,
            recalc_date=recalc_date,
            status=RecalcQueueItem.Status.PENDING,
            priority=priority,
            reason=reason,
            queued_at=now,
        )
        logger.debug("recalc queued id=%s item=%s date=%s priority=%s", item.id, item_code, recalc_date, priority)
        return item

    item.status = RecalcQueueItem.Status.PENDING
    item.priority = priority
    item.reason = reason
    item.queued_at = now
    item.started_at = None
    item.completed_at = None
    item.error_message = None
    item.save(
        update_fields=[
            "status",
            "priority",
            "reason",
            "queued_at",
            "started_at",
            "completed_at",
            "error_message",
        ]
    )
    logger.debug("recalc re-queued id=%s item=%s date=%s priority=%s", item.id, item_code, recalc_date, priority)
    return item


def enqueue_for_dates(
    company_id: UUID,
    targets,
    *,
    reason: str,
    clock: Clock | None = None,
) -> list[RecalcQueueItem]:
    """`targets` yields (item_type, item_code, date); duplicates collapse to one row."""
    clock = clock or default_clock
    now = clock.now()
    queued: list[RecalcQueueItem] = []
    seen: set[tuple[str, str, date]] = set()

    for item_type, item_code, on in targets:
        if (item_type, item_code, on) in seen:
            continue
        seen.add((item_type, item_code, on))
        queued.append(
            enqueue(
                company_id,
                item_type,
                item_code,
                on,
                priority=priority_for(on, clock=clock),
                reason=reason,
                now=now,
            )
        )

    return queued


@transaction.atomic
def requeue_failed(queryset, *, description: str, now=None) -> Counter:
    """
    Move the FAILED rows of `queryset` back to PENDING under row locks.
    One audit event per company is emitted once the transaction commits.
    Returns requeued counts keyed by company_id.
    """
    now = now or timezone.now()
    by_company: Counter = Counter()

    failed = queryset.select_for_update().filter(status=RecalcQueueItem.Status.FAILED).order_by("id")
    for item in failed:
        item.requeue(now=now)
        by_company[item.company_id] += 1
        logger.info("recalc requeued id=%s item=%s date=%s", item.id, item.item_code, item.recalc_date)

    for company_id, count in by_company.items():
        transaction.on_commit(
            lambda company_id=company_id, count=count: emit_audit_event_best_effort(
                event_name="customs.recalc.requeued",
                payload={"requeued": count},
                context=AuditContext(company_id=company_id),
                description=description,
            )
        )
    return by_company
