import os
import random
import tempfile
import unittest
from contextlib import closing

import pos_store as store
from cart import Applied, Capped, Cart, Found, NotFound, Rejected, Removed, ScanFailed, lookup_barcode
from pos_errors import StorageError, ValidationError
from pos_models import Product


class RecordingScheduler:
    def __init__(self):
        self.calls = []

    def trigger_sale_upload(self):
        self.calls.append("sales")
        return True

    def trigger_product_sync(self):
        self.calls.append("products")
        return True


def _product(pid=1, stock=5.0, price=10.0, name=None, barcode=None):
    return Product(id=pid, code=f"P{pid}", name=name or f"Product {pid}", barcode=barcode,
                   qte_on_hand=stock, qte_available_for_sale=stock, price=price)


class CartTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "pos.db")
        self.product = _product()
        with closing(store.connect(self.db_path)) as conn:
            store.upsert_products(conn, [self.product, _product(2, stock=0.0), _product(3, stock=50.0, price=2.5)])
        self.scheduler = RecordingScheduler()
        self.cart = Cart(self.db_path, scheduler=self.scheduler)
        self.cart.set_client(1)
        self.cart.set_warehouse(1)

    def tearDown(self):
        self.tmp.cleanup()

    def test_second_add_is_capped_at_available_stock(self):
        self.assertIsInstance(self.cart.add_to_cart(self.product, 3), Applied)
        result = self.cart.add_to_cart(self.product, 4)
        self.assertIsInstance(result, Capped)
        self.assertEqual(result.requested, 7)
        line = self.cart.line_for(1)
        self.assertEqual(line.quantity, 5)
        self.assertEqual(line.subtotal, 50)
        self.assertEqual(self.cart.totals.subtotal, 50)

    def test_stock_is_read_from_the_store_not_the_snapshot(self):
        stale = _product(stock=100.0)
        result = self.cart.add_to_cart(stale, 20)
        self.assertIsInstance(result, Capped)
        self.assertEqual(self.cart.line_for(1).quantity, 5)

    def test_quantity_stays_within_stock_for_any_sequence(self):
        rng = random.Random(42)
        for _ in range(300):
            if rng.random() < 0.5:
                self.cart.add_to_cart(self.product, rng.choice([-2, 0, 0.5, 1, 3, 7]))
            else:
                self.cart.update_quantity(1, rng.choice([-1, 0, 0.25, 2, 5, 9]))
            line = self.cart.line_for(1)
            quantity = line.quantity if line else 0
            self.assertGreaterEqual(quantity, 0)
            self.assertLessEqual(quantity, 5)
            if line:
                self.assertGreater(line.quantity, 0)

    def test_rejections(self):
        self.assertIsInstance(self.cart.add_to_cart(_product(2, stock=0.0), 1), Rejected)
        self.assertIsInstance(self.cart.add_to_cart(self.product, 0), Rejected)
        self.assertIsInstance(self.cart.add_to_cart(self.product, -1), Rejected)
        self.assertIsInstance(self.cart.update_quantity(42, 1), Rejected)
        self.assertIsInstance(self.cart.remove_from_cart(42), Rejected)
        self.assertTrue(self.cart.is_empty())

    def test_update_quantity_clamps_and_removes(self):
        self.cart.add_to_cart(self.product, 1)
        self.assertIsInstance(self.cart.update_quantity(1, 2), Applied)
        capped = self.cart.update_quantity(1, 8)
        self.assertIsInstance(capped, Capped)
        self.assertEqual(self.cart.line_for(1).quantity, 5)
        self.assertIsInstance(self.cart.update_quantity(1, 0), Removed)
        self.assertIsNone(self.cart.line_for(1))

    def test_add_after_stock_ran_out_removes_the_line(self):
        self.cart.add_to_cart(self.product, 2)
        with closing(store.connect(self.db_path)) as conn:
            store.upsert_products(conn, [_product(stock=0.0)])
        result = self.cart.add_to_cart(self.product, 1)
        self.assertIsInstance(result, Removed)
        self.assertIsNone(self.cart.line_for(1))
        self.assertTrue(self.cart.is_empty())
        self.assertEqual(self.cart.totals.subtotal, 0)

    def test_unit_price_is_captured_at_add_time(self):
        self.cart.add_to_cart(self.product, 1)
        with closing(store.connect(self.db_path)) as conn:
            store.upsert_products(conn, [_product(price=99.0)])
        self.cart.add_to_cart(self.product, 1)
        line = self.cart.line_for(1)
        self.assertEqual(line.unit_price, 10.0)
        self.assertEqual(line.subtotal, 20.0)

    def test_totals_and_floor_at_zero(self):
        self.cart.add_to_cart(self.product, 2)
        self.cart.add_to_cart(_product(3, stock=50.0, price=2.5), 4)
        self.cart.set_tax(3)
        self.cart.set_shipping(2)
        self.cart.set_discount(5)
        self.assertEqual(self.cart.totals.subtotal, 30.0)
        self.assertEqual(self.cart.totals.total, 30.0)
        self.cart.set_discount(500)
        self.assertEqual(self.cart.totals.total, 0.0)
        self.assertEqual([line.product.id for line in self.cart.lines], [1, 3])

    def test_checkout_empty_cart(self):
        with self.assertRaises(ValidationError) as ctx:
            self.cart.checkout(1, 10.0)
        self.assertEqual(ctx.exception.problems, ["cart empty"])

    def test_checkout_reports_every_missing_precondition(self):
        cart = Cart(self.db_path)
        with self.assertRaises(ValidationError) as ctx:
            cart.checkout(None, 0)
        self.assertEqual(ctx.exception.problems, [
            "cart empty", "no client selected", "no warehouse selected",
            "payment amount must be positive", "no payment method selected",
        ])

    def test_checkout_with_amount_below_total_is_allowed(self):
        self.cart.add_to_cart(_product(4, stock=50.0, price=25.0), 4)
        self.cart.set_tax(7)
        self.assertEqual(self.cart.totals.total, 107.0)
        sale = self.cart.checkout(1, 100.0)
        with closing(store.connect(self.db_path)) as conn:
            payments = store.get_payments(conn, sale.local_id)
        self.assertEqual(len(payments), 1)
        self.assertEqual(payments[0].amount, 100.0)
        self.assertEqual(payments[0].change, 0.0)
        self.assertEqual(sale.grand_total, 107.0)
        self.assertAlmostEqual(sale.tax_rate, 7.0)

    def test_checkout_commits_every_line_and_clears_cart(self):
        self.cart.add_to_cart(self.product, 2)
        self.cart.add_to_cart(_product(3, stock=50.0, price=2.5), 4)
        sale = self.cart.checkout(1, 50.0, notes="table 4")
        self.assertTrue(self.cart.is_empty())
        self.assertEqual(self.cart.totals.total, 0.0)
        with closing(store.connect(self.db_path)) as conn:
            stored = store.get_sale(conn, sale.local_id)
            lines = store.get_sale_lines(conn, sale.local_id)
            payments = store.get_payments(conn, sale.local_id)
            unsynced = store.list_unsynced_sales(conn)
        self.assertEqual(len(lines), 2)
        self.assertEqual(stored.notes, "table 4")
        self.assertEqual(stored.grand_total, 30.0)
        self.assertEqual(payments[0].change, 20.0)
        self.assertEqual([s.local_id for s in unsynced], [sale.local_id])
        self.assertEqual(sorted(self.scheduler.calls), ["products", "sales"])

    def test_failed_checkout_keeps_the_cart(self):
        self.cart.add_to_cart(self.product, 1)
        original = store.commit_sale

        def boom(conn, sale, lines, payments):
            raise store.sqlite3.OperationalError("disk I/O error")

        try:
            store.commit_sale = boom
            with self.assertRaises(StorageError):
                self.cart.checkout(1, 10.0)
        finally:
            store.commit_sale = original
        self.assertFalse(self.cart.is_empty())
        self.assertEqual(self.scheduler.calls, [])

    def test_save_as_draft(self):
        self.cart.add_to_cart(self.product, 2)
        draft = self.cart.save_as_draft(notes="later")
        self.assertTrue(self.cart.is_empty())
        with closing(store.connect(self.db_path)) as conn:
            self.assertEqual(len(store.get_draft_lines(conn, draft.local_id)), 1)
            self.assertEqual(store.list_unsynced_sales(conn), [])
        self.assertEqual(self.scheduler.calls, ["sales"])

    def test_barcode_lookup(self):
        with closing(store.connect(self.db_path)) as conn:
            store.upsert_products(conn, [_product(9, barcode="5012345678900")])
        found = lookup_barcode(self.db_path, "5012345678900\n")
        self.assertIsInstance(found, Found)
        self.assertEqual(found.product.id, 9)
        self.assertIsInstance(lookup_barcode(self.db_path, "000"), NotFound)
        self.assertIsInstance(lookup_barcode(self.db_path, "   "), ScanFailed)


if __name__ == "__main__":
    unittest.main()
