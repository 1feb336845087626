from __future__ import annotations

from datetime import date
from uuid import uuid4

from django.conf import settings
from django.test import SimpleTestCase, TestCase, override_settings

from apps.customs.exceptions import LedgerValidationError
from apps.customs.models import LedgerEntry, PostedMovement
from apps.customs.normalization import normalize_text, sanitize_remarks
from apps.customs.services import validate_opening_balances
from apps.customs.constants import LEDGER_DOCUMENT
from apps.customs.validators import (
    ItemCandidate,
    check_master_consistency,
    parse_ledger_date,
    parse_rows,
    parse_stock_query,
    validate_batch,
)

from .factories import CLOCK, D, opening, record


def _candidate(code="RM-001", uom="KG", name="Resin", item_type="ROH") -> ItemCandidate:
    return ItemCandidate.normalized(item_code=code, uom=uom, item_name=name, item_type=item_type)


class ValidateBatchTests(TestCase):
    def setUp(self) -> None:
        self.company_id = uuid4()

    def _existing(self, code="RM-001", uom="KG", name="Resin", item_type="ROH", on=date(2024, 1, 1)):
        return LedgerEntry.objects.create(
            company_id=self.company_id,
            item_type=item_type,
            item_code=code,
            item_name=name,
            uom=uom,
            date=on,
            incoming=D(1),
            ending=D(1),
        )

    def _reasons(self, outcomes, candidate) -> list[str]:
        return [e.reason for e in outcomes[candidate.key].errors]

    def test_clean_batch_is_valid(self):
        c = _candidate()
        outcomes = validate_batch(self.company_id, [c])
        self.assertTrue(outcomes[c.key].valid)
        self.assertEqual(outcomes[c.key].as_dict(), {"valid": True, "errors": []})

    def test_duplicate_within_batch(self):
        c = _candidate()
        outcomes = validate_batch(self.company_id, [c, _candidate(code=" RM-001 ")])
        self.assertEqual(len(outcomes), 1)
        self.assertEqual(self._reasons(outcomes, c), ["Complete duplicate within the batch"])

    def test_identical_existing_item(self):
        self._existing()
        c = _candidate()
        self.assertEqual(
            self._reasons(validate_batch(self.company_id, [c]), c),
            ["Item already exists with identical data"],
        )

    def test_name_and_type_conflicts_accumulate(self):
        self._existing(name="Bar", item_type="HALB")
        c = _candidate(name="Foo", item_type="ROH")

        reasons = self._reasons(validate_batch(self.company_id, [c]), c)

        self.assertEqual(len(reasons), 2)
        self.assertIn("different name (Bar)", reasons[0])
        self.assertIn("different type (HALB)", reasons[1])

    def test_same_code_with_other_uom_is_a_unit_conflict_only(self):
        self._existing(uom="PCS", name="Bar")
        c = _candidate(uom="KG", name="Foo")

        reasons = self._reasons(validate_batch(self.company_id, [c]), c)

        # name/type rules only compare the same (code, uom)
        self.assertEqual(reasons, ["Item RM-001 is already kept in UOM PCS; cannot post it in KG"])

    def test_batch_mixing_uoms_for_one_code_is_rejected(self):
        kg, pcs = _candidate(uom="KG"), _candidate(uom="PCS")

        outcomes = validate_batch(self.company_id, [kg, pcs])

        self.assertIn("another UOM (PCS)", self._reasons(outcomes, kg)[0])
        self.assertIn("another UOM (KG)", self._reasons(outcomes, pcs)[0])

    def test_movement_consistency_checks_unit(self):
        self._existing(uom="KG")
        c = _candidate(uom="PCS")

        outcomes = check_master_consistency(self.company_id, [c])

        self.assertFalse(outcomes[c.key].valid)
        self.assertIn("already kept in UOM KG", outcomes[c.key].errors[0].reason)

    def test_posted_incoming_and_outgoing_are_both_reported(self):
        for direction in (PostedMovement.Direction.INCOMING, PostedMovement.Direction.OUTGOING):
            PostedMovement.objects.create(
                company_id=self.company_id,
                direction=direction,
                document_number=f"DOC-{direction}",
                item_type="ROH",
                item_code="RM-001",
                item_name="Resin",
                uom="KG",
                qty=D(1),
                posted_on=date(2024, 1, 1),
            )
        c = _candidate()

        reasons = self._reasons(validate_batch(self.company_id, [c]), c)

        self.assertEqual(
            reasons,
            ["Item RM-001 already has incoming transactions", "Item RM-001 already has outgoing transactions"],
        )

    def test_other_company_data_is_ignored(self):
        self._existing(name="Bar")
        c = _candidate(name="Foo")
        self.assertTrue(validate_batch(uuid4(), [c])[c.key].valid)

    def test_dry_run_writes_nothing(self):
        outcomes = validate_opening_balances(self.company_id, [opening(), opening("RM-002")], clock=CLOCK)

        self.assertEqual(len(outcomes), 2)
        self.assertTrue(all(o.valid for o in outcomes.values()))
        self.assertFalse(LedgerEntry.objects.exists())


class ParseRowsTests(SimpleTestCase):
    def _errors(self, records, **kwargs):
        with self.assertRaises(LedgerValidationError) as ctx:
            parse_rows(records, clock=CLOCK, **kwargs)
        return ctx.exception.row_errors

    def test_accepts_iso_and_us_dates(self):
        rows = parse_rows(
            [record(on="2024-01-05", incoming="1"), record("RM-002", on="01/06/2024", incoming="1")],
            clock=CLOCK,
        )
        self.assertEqual([r.date for r in rows], [date(2024, 1, 5), date(2024, 1, 6)])

    def test_today_is_allowed_and_tomorrow_rejected(self):
        self.assertEqual(len(parse_rows([record(on="2024-02-01", incoming="1")], clock=CLOCK)), 1)
        errors = self._errors([record(on="2024-02-02", incoming="1")])
        self.assertEqual((errors[0].row, errors[0].field), (1, "date"))

    def test_empty_rows_are_skipped_and_numbering_kept(self):
        errors = self._errors([{}, record(item_type="XYZ", incoming="1")])
        self.assertEqual(errors[0].row, 2)
        self.assertIn("Invalid item type", errors[0].reason)

    def test_only_empty_rows(self):
        errors = self._errors([{}, {"itemCode": "  "}])
        self.assertEqual(errors[0].reason, "No valid records found to import")

    def test_not_a_list(self):
        self.assertEqual(self._errors({"records": []})[0].field, "records")
        self.assertEqual(self._errors([])[0].reason, "No records provided")

    def test_quantity_rules(self):
        self.assertIn("must not be negative", self._errors([record(incoming="-1")])[0].reason)
        self.assertIn("must be a number", self._errors([record(incoming="abc")])[0].reason)
        self.assertIn("at most 6 decimal places", self._errors([record(incoming="1.1234567")])[0].reason)
        self.assertIn("greater than 0", self._errors([record(incoming="0")])[0].reason)

    def test_adjustment_type(self):
        rows = parse_rows([record(adjustment="3", adjustmentType="loss")], clock=CLOCK)
        self.assertEqual(rows[0].movement.adjustment, D(-3))
        self.assertEqual(self._errors([record(adjustment="3", adjustmentType="BOTH")])[0].field, "adjustmentType")

    def test_missing_fields_are_reported_per_row(self):
        errors = self._errors(
            [
                record(incoming="1", name=""),
                record("RM-002", incoming="1", uom=""),
                {"itemType": "ROH", "itemCode": "RM-003", "itemName": "X", "uom": "KG", "incoming": "1"},
            ]
        )
        self.assertEqual([(e.row, e.field) for e in errors], [(1, "itemName"), (2, "uom"), (3, "date")])

    def test_values_are_normalized(self):
        rows = parse_rows([record(code="  RM   001 ", name=" Resin  A ", incoming="1")], clock=CLOCK)
        self.assertEqual(rows[0].candidate.item_code, "RM 001")
        self.assertEqual(rows[0].candidate.item_name, "Resin A")

    def test_opening_balance_requires_qty(self):
        errors = self._errors([opening(qty=None)], opening_balance=True)
        self.assertEqual(errors[0].field, "qty")

    def test_opening_balance_identical_rows_pass_parsing(self):
        rows = parse_rows([opening(), opening()], clock=CLOCK, opening_balance=True)
        self.assertEqual(len(rows), 2)

    def test_document_number(self):
        rows = parse_rows(
            [record(incoming="1", documentNumber=" BC23  0001 "), record("RM-002", incoming="1")],
            clock=CLOCK,
        )
        self.assertEqual([r.document_number for r in rows], ["BC23 0001", LEDGER_DOCUMENT])
        self.assertEqual(self._errors([record(incoming="1", documentNumber="X" * 65)])[0].field, "documentNumber")


class ParseStockQueryTests(SimpleTestCase):
    def test_valid_query(self):
        parsed = parse_stock_query({"itemCode": " RM-001 ", "date": "2024-01-05", "qtyRequested": 12.5}, clock=CLOCK)
        self.assertEqual(parsed, ("RM-001", date(2024, 1, 5), D("12.5")))

    def test_errors_are_collected(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            parse_stock_query({"date": "2024-03-01", "qtyRequested": 0}, clock=CLOCK)
        self.assertEqual([e.field for e in ctx.exception.row_errors], ["itemCode", "date", "qtyRequested"])


class NormalizationTests(SimpleTestCase):
    def test_normalize_text(self):
        self.assertEqual(normalize_text("  a \t b  "), "a b")
        self.assertEqual(normalize_text(None), "")

    def test_remarks_are_escaped(self):
        self.assertEqual(sanitize_remarks("  <b>x</b> "), "&lt;b&gt;x&lt;/b&gt;")
        self.assertIsNone(sanitize_remarks("   "))

    @override_settings(CUSTOMS_LEDGER={**settings.CUSTOMS_LEDGER, "REMARKS_MAX_LENGTH": 5})
    def test_remarks_length_cap(self):
        with self.assertRaises(ValueError):
            sanitize_remarks("123456")

    def test_parse_ledger_date_rejects_garbage(self):
        with self.assertRaises(ValueError):
            parse_ledger_date("13/45/2024")
