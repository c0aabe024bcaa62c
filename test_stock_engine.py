import unittest

from backends import InsufficientStockError, StockValidationError
from local_store import SqliteBackend, connect
from stock_engine import (
    BATCH_ACTIVE,
    BATCH_DISPOSED,
    RISK_CRITICAL,
    RISK_SAFE,
    RISK_WARNING,
    ConversionInfo,
    StockEngine,
    apply_once,
    breakout_batch_id,
    classify_variance,
)


class StockEngineTestBase(unittest.TestCase):
    def setUp(self):
        self.store = SqliteBackend(connect(":memory:"))
        self.engine = StockEngine(self.store, critical_threshold=50)
        self.store.insert_if_absent("inventory_items", {
            "id": "whisky", "store_id": "s1", "item_name": "Whisky 750ml",
            "unit_price": 2500, "buying_price": 2000, "low_stock_threshold": 2,
            "reorder_level": 1, "sku": "WHS-750", "barcode": "600123",
        })
        self.store.insert_if_absent("inventory_items", {
            "id": "milk", "store_id": "s1", "item_name": "Milk 500ml",
            "unit_price": 60, "current_stock": 15,
        })

    def tearDown(self):
        self.store.close()

    def _item(self, item_id):
        return self.store.get("inventory_items", item_id)

    def _batch(self, batch_id):
        return self.store.get("inventory_batches", batch_id)

    def _add_batch(self, batch_id, item_id, qty, expiry=None, created_at=None):
        self.store.insert_if_absent("inventory_batches", {
            "id": batch_id, "store_id": "s1", "inventory_item_id": item_id,
            "expiry_date": expiry, "current_stock": qty, "status": BATCH_ACTIVE,
            "created_at": created_at,
        })

    def _breakout(self):
        return self.engine.create_breakout_unit_item(
            self._item("whisky"), ConversionInfo("Tot", 25, "Bottle"), item_id="tot")


class BreakoutTest(StockEngineTestBase):
    def test_breakout_item_prices_and_thresholds_follow_rate(self):
        tot = self._breakout()
        self.assertEqual(tot["parent_item_id"], "whisky")
        self.assertAlmostEqual(tot["unit_price"], 100)
        self.assertAlmostEqual(tot["buying_price"], 80)
        self.assertAlmostEqual(tot["low_stock_threshold"], 50)
        self.assertAlmostEqual(tot["reorder_level"], 25)
        self.assertEqual(tot["current_stock"], 0)
        self.assertEqual(tot["item_name"], "Tot (Whisky 750ml)")
        self.assertEqual(tot["sku"], "WHS-750_Tot")
        self.assertEqual(tot["barcode"], "600123-UNIT")
        parent = self._item("whisky")
        self.assertEqual(parent["is_bulk_parent"], 1)
        self.assertAlmostEqual(parent["conversion_rate"], 25)

    def test_non_positive_rate_rejected(self):
        for rate in (0, -5):
            with self.assertRaises(StockValidationError):
                self.engine.create_breakout_unit_item(self._item("whisky"), ConversionInfo("Tot", rate))
        self.assertEqual(self.engine.get_breakout_items("whisky"), [])

    def test_breakout_of_breakout_rejected(self):
        tot = self._breakout()
        with self.assertRaises(StockValidationError):
            self.engine.create_breakout_unit_item(tot, ConversionInfo("Drop", 10))

    def test_bulk_receipt_populates_breakout_batch(self):
        self._breakout()
        self.engine.receive_batch({"id": "b1", "inventory_item_id": "whisky",
                                   "current_stock": 4, "expiry_date": "2025-06-30",
                                   "batch_number": "WHS-001"})
        child = self._batch(breakout_batch_id("b1", "tot"))
        self.assertEqual(child["current_stock"], 100)
        self.assertEqual(child["expiry_date"], "2025-06-30")
        self.assertEqual(child["parent_batch_id"], "b1")
        self.assertEqual(child["batch_number"], "WHS-001_Tot")
        self.assertEqual(self._item("tot")["current_stock"], 100)
        self.assertEqual(self._item("whisky")["current_stock"], 4)

    def test_populate_twice_adds_nothing(self):
        tot = self._breakout()
        self._add_batch("b1", "whisky", 4)
        bulk = self._batch("b1")
        conversion = ConversionInfo("Tot", 25)
        self.engine.populate_breakout_batches(bulk, conversion, tot)
        self.engine.populate_breakout_batches(bulk, conversion, tot)
        self.assertEqual(self._item("tot")["current_stock"], 100)
        self.assertEqual(len(self.store.query("inventory_batches", {"inventory_item_id": "tot"})), 1)

    def test_populate_rejects_unlinked_item(self):
        self._add_batch("b1", "whisky", 4)
        with self.assertRaises(StockValidationError):
            self.engine.populate_breakout_batches(self._batch("b1"), ConversionInfo("Tot", 25),
                                                  self._item("milk"))

    def test_deduct_breakout_units_with_batch(self):
        self._breakout()
        self.engine.receive_batch({"id": "b1", "inventory_item_id": "whisky", "current_stock": 4})
        child_id = breakout_batch_id("b1", "tot")
        self.assertTrue(self.engine.deduct_breakout_units("tot", 10, child_id))
        self.assertEqual(self._batch(child_id)["current_stock"], 90)
        self.assertEqual(self._item("tot")["current_stock"], 90)

    def test_deduct_breakout_units_refuses_overdraw_without_partial_change(self):
        self._breakout()
        self.engine.receive_batch({"id": "b1", "inventory_item_id": "whisky", "current_stock": 4})
        child_id = breakout_batch_id("b1", "tot")
        self.assertFalse(self.engine.deduct_breakout_units("tot", 101, child_id))
        self.assertEqual(self._batch(child_id)["current_stock"], 100)
        self.assertEqual(self._item("tot")["current_stock"], 100)

    def test_deduct_breakout_units_aggregate_only(self):
        self._breakout()
        self.engine.receive_batch({"id": "b1", "inventory_item_id": "whisky", "current_stock": 4})
        self.assertTrue(self.engine.deduct_breakout_units("tot", 20))
        self.assertEqual(self._item("tot")["current_stock"], 80)
        self.assertEqual(self._batch(breakout_batch_id("b1", "tot"))["current_stock"], 100)

    def test_deduct_breakout_units_rejects_plain_items_and_bad_quantities(self):
        self._breakout()
        self.assertFalse(self.engine.deduct_breakout_units("milk", 1))
        self.assertFalse(self.engine.deduct_breakout_units("missing", 1))
        self.assertFalse(self.engine.deduct_breakout_units("tot", 0))
        self.assertFalse(self.engine.deduct_breakout_units("tot", -3))
        self.assertEqual(self._item("milk")["current_stock"], 15)


class FefoTest(StockEngineTestBase):
    def setUp(self):
        super().setUp()
        self._add_batch("mar", "milk", 5, "2024-03-01")
        self._add_batch("jan", "milk", 5, "2024-01-15")
        self._add_batch("feb", "milk", 5, "2024-02-10")

    def test_earliest_expiry_selected_first(self):
        self.assertEqual(self.engine.select_fefo_batch("milk")["id"], "jan")
        ordered = [b["expiry_date"] for b in self.engine.active_batches("milk")]
        self.assertEqual(ordered, ["2024-01-15", "2024-02-10", "2024-03-01"])

    def test_undated_batches_come_last(self):
        self._add_batch("none", "milk", 5, None)
        self.assertEqual(self.engine.active_batches("milk")[-1]["id"], "none")

    def test_as_of_skips_expired(self):
        self.assertEqual(self.engine.select_fefo_batch("milk", as_of="2024-02-01")["id"], "feb")

    def test_allocation_spans_batches(self):
        self.assertEqual(self.engine.allocate_fefo("milk", 8), [("jan", 5), ("feb", 3)])

    def test_short_allocation_applies_nothing(self):
        with self.assertRaises(InsufficientStockError) as ctx:
            self.engine.deduct_fefo("milk", 16)
        self.assertEqual(ctx.exception.available, 15)
        self.assertEqual([b["current_stock"] for b in self.engine.active_batches("milk")], [5, 5, 5])

    def test_deduct_marks_emptied_batch_disposed(self):
        self.engine.deduct_fefo("milk", 8)
        self.assertEqual(self._batch("jan")["status"], BATCH_DISPOSED)
        self.assertEqual(self._batch("jan")["current_stock"], 0)
        self.assertEqual(self._batch("feb")["current_stock"], 2)
        self.assertEqual(self.engine.select_fefo_batch("milk")["id"], "feb")

    def test_restore_reactivates_batches(self):
        plan = self.engine.deduct_fefo("milk", 8)
        self.engine.restore_allocations("milk", 8, [{"batch_id": b, "quantity": q} for b, q in plan])
        self.assertEqual(self._batch("jan")["status"], BATCH_ACTIVE)
        self.assertEqual(self._batch("jan")["current_stock"], 5)
        self.assertEqual(self._batch("feb")["current_stock"], 5)
        self.assertEqual(self._item("milk")["current_stock"], 23)

    def test_sale_deducts_item_and_batches(self):
        allocations = self.engine.deduct_for_sale(self._item("milk"), 6)
        self.assertEqual(allocations, [{"batch_id": "jan", "quantity": 5}, {"batch_id": "feb", "quantity": 1}])
        self.assertEqual(self._item("milk")["current_stock"], 9)

    def test_sale_beyond_stock_clamps_item_at_zero(self):
        allocations = self.engine.deduct_for_sale(self._item("milk"), 40)
        self.assertEqual(allocations, [{"batch_id": "jan", "quantity": 5},
                                       {"batch_id": "feb", "quantity": 5},
                                       {"batch_id": "mar", "quantity": 5}])
        self.assertEqual(self._item("milk")["current_stock"], 0)
        self.assertEqual(self.engine.active_batches("milk"), [])
        self.assertEqual(self._batch("mar")["status"], BATCH_DISPOSED)

    def test_short_batches_give_up_what_they_hold(self):
        self.store.update("inventory_items", "milk", {"current_stock": 20})
        allocations = self.engine.deduct_for_sale(self._item("milk"), 18)
        self.assertEqual(sum(a["quantity"] for a in allocations), 15)
        self.assertEqual(self._item("milk")["current_stock"], 2)
        batch_total = sum(b["current_stock"] for b in self.store.query("inventory_batches",
                                                                       {"inventory_item_id": "milk"}))
        self.assertLessEqual(batch_total, self._item("milk")["current_stock"])

    def test_short_plan_only_when_allowed(self):
        self.assertEqual(self.engine.allocate_fefo("milk", 16, allow_short=True),
                         [("jan", 5), ("feb", 5), ("mar", 5)])
        with self.assertRaises(InsufficientStockError):
            self.engine.allocate_fefo("milk", 16)

    def test_dispose_batch_writes_off_remaining(self):
        self.assertEqual(self.engine.dispose_batch("feb", "spoiled"), 5)
        self.assertEqual(self._batch("feb")["status"], BATCH_DISPOSED)
        self.assertEqual(self._item("milk")["current_stock"], 10)
        self.assertEqual(self.engine.dispose_batch("feb"), 0)


class LedgerStepTest(StockEngineTestBase):
    def test_step_runs_once_per_key(self):
        calls = []
        self.assertTrue(apply_once(self.store, "sale:x:stock", lambda: calls.append(1), "CREATE_SALE"))
        self.assertFalse(apply_once(self.store, "sale:x:stock", lambda: calls.append(1), "CREATE_SALE"))
        self.assertEqual(calls, [1])
        self.assertEqual(self.store.get("applied_mutations", "sale:x:stock")["action"], "CREATE_SALE")

    def test_failed_step_is_not_recorded(self):
        def boom():
            raise StockValidationError("nope")

        with self.assertRaises(StockValidationError):
            apply_once(self.store, "sale:y:stock", boom, "CREATE_SALE")
        self.assertIsNone(self.store.get("applied_mutations", "sale:y:stock"))

    def test_receiving_same_batch_twice_stocks_once(self):
        self._breakout()
        for _ in range(2):
            self.engine.receive_batch({"id": "b1", "inventory_item_id": "whisky", "current_stock": 4})
        self.assertEqual(self._item("whisky")["current_stock"], 4)
        self.assertEqual(self._item("tot")["current_stock"], 100)


class AuditTest(StockEngineTestBase):
    def setUp(self):
        super().setUp()
        self._breakout()

    def _set_units(self, units):
        self.store.update("inventory_items", "tot", {"current_stock": units})

    def test_units_without_physical_backing_are_critical(self):
        self._set_units(60)
        report = self.engine.calculate_audit_variance("whisky", 0)
        self.assertEqual(report.expected_units, 0)
        self.assertEqual(report.actual_units, 60)
        self.assertEqual(report.variance, 60)
        self.assertEqual(report.risk_level, RISK_CRITICAL)

    def test_balanced_stock_is_safe(self):
        self._set_units(50)
        report = self.engine.calculate_audit_variance("whisky", 2)
        self.assertEqual(report.expected_units, 50)
        self.assertEqual(report.variance, 0)
        self.assertEqual(report.risk_level, RISK_SAFE)

    def test_small_surplus_is_warning(self):
        self._set_units(30)
        report = self.engine.calculate_audit_variance("whisky", 1)
        self.assertEqual(report.variance, 5)
        self.assertEqual(report.risk_level, RISK_WARNING)

    def test_understated_books_are_warning(self):
        self._set_units(10)
        report = self.engine.calculate_audit_variance("whisky", 4)
        self.assertEqual(report.variance, -90)
        self.assertEqual(report.risk_level, RISK_WARNING)

    def test_store_threshold_overrides_default(self):
        self._set_units(60)
        self.store.insert_if_absent("store_settings", {"id": "s1", "audit_critical_threshold": 100})
        report = self.engine.calculate_audit_variance("whisky", 0)
        self.assertEqual(report.risk_level, RISK_WARNING)

    def test_audit_is_read_only(self):
        self._set_units(60)
        self.engine.calculate_audit_variance("whisky", 0)
        self.assertEqual(self._item("tot")["current_stock"], 60)

    def test_invalid_audits_rejected(self):
        with self.assertRaises(StockValidationError):
            self.engine.calculate_audit_variance("whisky", -1)
        with self.assertRaises(StockValidationError):
            self.engine.calculate_audit_variance("tot", 1)
        with self.assertRaises(StockValidationError):
            self.engine.calculate_audit_variance("milk", 1)

    def test_classify_variance(self):
        self.assertEqual(classify_variance(0.0, 10, 50), RISK_SAFE)
        self.assertEqual(classify_variance(51, 51, 50), RISK_CRITICAL)
        self.assertEqual(classify_variance(5, 50, 50), RISK_WARNING)
        self.assertEqual(classify_variance(-5, 200, 50), RISK_WARNING)


if __name__ == "__main__":
    unittest.main()
