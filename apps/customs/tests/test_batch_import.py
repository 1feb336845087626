from __future__ import annotations

from datetime import date
from uuid import uuid4

from django.test import TestCase, override_settings
from django.conf import settings

from apps.audit.models import AuditEvent
from apps.customs.exceptions import LedgerValidationError
from apps.customs.models import LedgerEntry, PostedMovement, RecalcQueueItem
from apps.customs.services import import_movements, import_opening_balances, post_movement

from .factories import CLOCK, D, balances, opening, record


class ImportMovementsTests(TestCase):
    def setUp(self) -> None:
        self.company_id = uuid4()

    def test_unsorted_batch_is_applied_in_date_order_per_item(self):
        result = import_movements(
            self.company_id,
            [
                record("RM-001", "2024-01-03", incoming="50"),
                record("SC-001", "2024-01-02", item_type="SCRAP", name="Offcut", incoming="4"),
                record("RM-001", "2024-01-01", incoming="100"),
                record("RM-001", "2024-01-02", outgoing="30"),
            ],
            clock=CLOCK,
        )

        self.assertEqual(result.record_count, 4)
        self.assertEqual(result.by_type, {"ROH": 3, "SCRAP": 1})
        self.assertEqual(
            balances(self.company_id),
            [
                ("2024-01-01", D(0), D(100)),
                ("2024-01-02", D(100), D(70)),
                ("2024-01-03", D(70), D(120)),
            ],
        )
        self.assertEqual(balances(self.company_id, "SC-001"), [("2024-01-02", D(0), D(4))])

    def test_one_queue_row_per_item_at_earliest_date(self):
        result = import_movements(
            self.company_id,
            [
                record("RM-001", "2024-01-05", incoming="1"),
                record("RM-001", "2024-01-02", incoming="1"),
                record("RM-002", "2024-01-04", incoming="1"),
            ],
            clock=CLOCK,
        )

        queued = sorted((q.item_code, q.recalc_date) for q in result.queued)
        self.assertEqual(queued, [("RM-001", date(2024, 1, 2)), ("RM-002", date(2024, 1, 4))])
        self.assertEqual(RecalcQueueItem.objects.filter(company_id=self.company_id).count(), 2)

    def test_batch_respects_stored_rows_between_batch_dates(self):
        post_movement(self.company_id, record("RM-001", "2024-01-02", incoming="5"), clock=CLOCK)

        import_movements(
            self.company_id,
            [
                record("RM-001", "2024-01-01", incoming="10"),
                record("RM-001", "2024-01-03", incoming="1"),
            ],
            clock=CLOCK,
        )

        self.assertEqual(
            balances(self.company_id),
            [
                ("2024-01-01", D(0), D(10)),
                ("2024-01-02", D(10), D(15)),
                ("2024-01-03", D(15), D(16)),
            ],
        )

    def test_batch_cascades_into_later_stored_rows(self):
        post_movement(self.company_id, record("RM-001", "2024-01-10", incoming="5"), clock=CLOCK)

        result = import_movements(self.company_id, [record("RM-001", "2024-01-01", incoming="100")], clock=CLOCK)

        self.assertEqual(result.touched, 1)
        self.assertEqual(balances(self.company_id)[-1], ("2024-01-10", D(100), D(105)))

    def test_duplicate_item_date_in_batch_rejects_everything(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            import_movements(
                self.company_id,
                [
                    record("RM-001", "2024-01-01", incoming="10"),
                    record("RM-002", "2024-01-01", incoming="10"),
                    record("RM-001", "01/01/2024", incoming="20"),
                ],
                clock=CLOCK,
            )

        errors = ctx.exception.row_errors
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].row, 3)
        self.assertIn("first seen at row 1", errors[0].reason)
        self.assertFalse(LedgerEntry.objects.filter(company_id=self.company_id).exists())
        self.assertFalse(RecalcQueueItem.objects.filter(company_id=self.company_id).exists())

    def test_rejection_is_audited(self):
        with self.assertRaises(LedgerValidationError):
            import_movements(self.company_id, [record("RM-001", "2024-03-01", incoming="1")], clock=CLOCK)

        event = AuditEvent.objects.get(event_name="customs.import.rejected")
        self.assertEqual(event.status, AuditEvent.Status.FAILED)
        self.assertEqual(event.payload["operation"], "ledger.import")
        self.assertEqual(event.payload["error_count"], 1)

    def test_conflicting_master_data_rolls_back_whole_batch(self):
        post_movement(self.company_id, record("RM-001", "2024-01-01", name="Bar", incoming="1"), clock=CLOCK)

        with self.assertRaises(LedgerValidationError):
            import_movements(
                self.company_id,
                [
                    record("RM-002", "2024-01-02", incoming="3"),
                    record("RM-001", "2024-01-02", name="Foo", incoming="3"),
                ],
                clock=CLOCK,
            )

        self.assertFalse(LedgerEntry.objects.filter(company_id=self.company_id, item_code="RM-002").exists())

    @override_settings(CUSTOMS_LEDGER={**settings.CUSTOMS_LEDGER, "MAX_BATCH_RECORDS": 2})
    def test_batch_limit(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            import_movements(
                self.company_id,
                [record(on=f"2024-01-0{i}", incoming="1") for i in range(1, 4)],
                clock=CLOCK,
            )
        self.assertIn("maximum limit of 2", ctx.exception.row_errors[0].reason)

    def test_other_uom_for_stored_code_rolls_back_whole_batch(self):
        post_movement(self.company_id, record("RM-001", "2024-01-01", incoming="100"), clock=CLOCK)

        with self.assertRaises(LedgerValidationError) as ctx:
            import_movements(
                self.company_id,
                [
                    record("RM-002", "2024-01-02", incoming="3"),
                    record("RM-001", "2024-01-02", uom="PCS", incoming="5"),
                ],
                clock=CLOCK,
            )

        self.assertEqual(ctx.exception.row_errors[0].row, 2)
        self.assertIn("already kept in UOM KG", ctx.exception.row_errors[0].reason)
        self.assertEqual(balances(self.company_id), [("2024-01-01", D(0), D(100))])
        self.assertFalse(LedgerEntry.objects.filter(company_id=self.company_id, item_code="RM-002").exists())

    def test_posted_lines_follow_the_ledger(self):
        batch = [
            record("RM-001", "2024-01-01", incoming="100", documentNumber="BC23-001"),
            record("RM-001", "2024-01-02", outgoing="30", documentNumber="BC30-001"),
        ]
        import_movements(self.company_id, batch, clock=CLOCK)
        import_movements(self.company_id, batch, clock=CLOCK)

        lines = PostedMovement.objects.filter(company_id=self.company_id, deleted_at__isnull=True).order_by("posted_on")
        self.assertEqual(
            [(p.direction, p.document_number, p.qty) for p in lines],
            [
                (PostedMovement.Direction.INCOMING, "BC23-001", D(100)),
                (PostedMovement.Direction.OUTGOING, "BC30-001", D(30)),
            ],
        )

    def test_zero_quantity_retires_the_posted_line(self):
        post_movement(self.company_id, record("RM-001", "2024-01-01", incoming="10", outgoing="4"), clock=CLOCK)
        post_movement(self.company_id, record("RM-001", "2024-01-01", incoming="10", outgoing="0"), clock=CLOCK)

        live = PostedMovement.objects.filter(company_id=self.company_id, deleted_at__isnull=True)
        self.assertEqual([p.direction for p in live], [PostedMovement.Direction.INCOMING])
        self.assertEqual(PostedMovement.objects.filter(company_id=self.company_id).count(), 2)

    def test_outgoing_beyond_stock_rejects_whole_batch(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            import_movements(
                self.company_id,
                [
                    record("RM-001", "2024-01-01", incoming="10"),
                    record("RM-002", "2024-01-01", incoming="1"),
                    record("RM-001", "2024-01-02", outgoing="25"),
                ],
                clock=CLOCK,
            )

        error = ctx.exception.row_errors[0]
        self.assertEqual((error.row, error.field), (3, "outgoing"))
        self.assertIn("Available: 10, requested: 25", error.reason)
        self.assertFalse(LedgerEntry.objects.filter(company_id=self.company_id).exists())
        self.assertFalse(PostedMovement.objects.filter(company_id=self.company_id).exists())

    def test_success_is_audited(self):
        import_movements(self.company_id, [record(incoming="1")], clock=CLOCK)

        event = AuditEvent.objects.get(event_name="customs.ledger.imported")
        self.assertEqual(event.payload["record_count"], 1)
        self.assertEqual(event.payload["by_type"], {"ROH": 1})


class ImportOpeningBalancesTests(TestCase):
    def setUp(self) -> None:
        self.company_id = uuid4()

    def test_opening_balance_posts_incoming_from_zero(self):
        result = import_opening_balances(
            self.company_id,
            [opening("RM-001", qty="250.5"), opening("FG-001", item_type="FERT", name="Widget", qty="3")],
            clock=CLOCK,
        )

        self.assertEqual(result.record_count, 2)
        entry = LedgerEntry.objects.get(company_id=self.company_id, item_code="RM-001")
        self.assertEqual(entry.beginning, D(0))
        self.assertEqual(entry.incoming, D("250.5"))
        self.assertEqual(entry.ending, D("250.5"))
        self.assertTrue(AuditEvent.objects.filter(event_name="customs.opening_balance.imported").exists())

    def test_identical_rows_in_batch_are_rejected(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            import_opening_balances(self.company_id, [opening(), opening()], clock=CLOCK)

        reasons = {e.reason for e in ctx.exception.row_errors}
        self.assertEqual(reasons, {"Complete duplicate within the batch"})
        self.assertFalse(LedgerEntry.objects.filter(company_id=self.company_id).exists())

    def test_item_with_posted_movements_is_rejected(self):
        PostedMovement.objects.create(
            company_id=self.company_id,
            direction=PostedMovement.Direction.OUTGOING,
            document_number="BC30-001",
            item_type="ROH",
            item_code="RM-001",
            item_name="Resin",
            uom="KG",
            qty=D(5),
            posted_on=date(2024, 1, 5),
        )

        with self.assertRaises(LedgerValidationError) as ctx:
            import_opening_balances(self.company_id, [opening()], clock=CLOCK)

        self.assertIn("already has outgoing transactions", ctx.exception.row_errors[0].reason)
        event = AuditEvent.objects.get(event_name="customs.import.rejected")
        self.assertEqual(event.payload["operation"], "opening_balance.import")

    def test_item_posted_through_the_ledger_is_rejected(self):
        post_movement(self.company_id, record("RM-001", "2024-01-05", incoming="10"), clock=CLOCK)

        with self.assertRaises(LedgerValidationError) as ctx:
            import_opening_balances(self.company_id, [opening(qty="7")], clock=CLOCK)

        reasons = [e.reason for e in ctx.exception.row_errors]
        self.assertIn("Item RM-001 already has incoming transactions", reasons)
        self.assertEqual(balances(self.company_id), [("2024-01-05", D(0), D(10))])

    def test_other_uom_does_not_overwrite_opening_balance(self):
        import_opening_balances(self.company_id, [opening(uom="KG", qty="100")], clock=CLOCK)

        with self.assertRaises(LedgerValidationError) as ctx:
            import_opening_balances(self.company_id, [opening(uom="PCS", qty="5")], clock=CLOCK)

        self.assertIn("already kept in UOM KG", ctx.exception.row_errors[0].reason)
        entry = LedgerEntry.objects.get(company_id=self.company_id)
        self.assertEqual((entry.uom, entry.ending), ("KG", D(100)))

    def test_opening_balances_record_no_posted_lines(self):
        import_opening_balances(self.company_id, [opening()], clock=CLOCK)
        self.assertFalse(PostedMovement.objects.filter(company_id=self.company_id).exists())

    def test_qty_must_be_positive(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            import_opening_balances(self.company_id, [opening(qty="0")], clock=CLOCK)
        self.assertEqual(ctx.exception.row_errors[0].field, "qty")
