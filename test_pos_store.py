import os
import sqlite3
import tempfile
import unittest

import pos_store as store
from pos_models import Client, Draft, NamedRef, Payment, Product, Sale, SaleLine, Warehouse
from receipts import receipt_for


def _product(pid, code=None, name=None, stock=5.0, price=10.0, **extra):
    return Product(
        id=pid,
        code=code or f"P{pid}",
        name=name or f"Product {pid}",
        qte_on_hand=stock,
        qte_available_for_sale=stock,
        price=price,
        **extra,
    )


def _line(pid=1, qty=2.0, price=10.0, name="Product 1"):
    return SaleLine(product_id=pid, quantity=qty, unit_price=price, subtotal=qty * price,
                    product_name_snapshot=name)


class LocalStoreTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "pos.db")
        self.conn = store.connect(self.db_path)

    def tearDown(self):
        self.conn.close()
        self.tmp.cleanup()

    def _sale(self, total=20.0, **extra):
        base = dict(client_id=1, warehouse_id=1, grand_total=total)
        base.update(extra)
        return Sale(**base)

    def test_upsert_replaces_whole_record_by_id(self):
        store.upsert_products(self.conn, [_product(1, barcode="111", category_id=4)])
        store.upsert_products(self.conn, [_product(1, name="Renamed", stock=2.0)])
        p = store.get_product(self.conn, 1)
        self.assertEqual(p.name, "Renamed")
        self.assertEqual(p.qte_available_for_sale, 2.0)
        self.assertIsNone(p.barcode)
        self.assertIsNone(p.category_id)
        self.assertEqual(store.product_count(self.conn), 1)

    def test_negative_available_stock_is_stored_as_zero(self):
        store.upsert_products(self.conn, [_product(1, stock=-3.0)])
        self.assertEqual(store.get_product(self.conn, 1).qte_available_for_sale, 0.0)

    def test_failed_batch_leaves_no_partial_rows(self):
        good = _product(1)
        bad = _product(2)
        bad.name = None
        with self.assertRaises(sqlite3.Error):
            store.upsert_products(self.conn, [good, bad])
        self.assertEqual(store.product_count(self.conn), 0)

    def test_lookup_by_code_prefers_code_over_barcode(self):
        store.upsert_products(self.conn, [
            _product(1, code="ABC", barcode="999"),
            _product(2, code="999", barcode="ZZZ"),
        ])
        self.assertEqual(store.get_product_by_code(self.conn, "999").id, 2)
        self.assertEqual(store.get_product_by_code(self.conn, "ZZZ").id, 2)
        self.assertEqual(store.get_product_by_code(self.conn, " ABC ").id, 1)
        self.assertIsNone(store.get_product_by_code(self.conn, "nope"))
        self.assertIsNone(store.get_product_by_code(self.conn, ""))

    def test_predicate_queries(self):
        store.upsert_products(self.conn, [
            _product(1, name="Apple iPhone", category_id=1, brand_id=7),
            _product(2, name="Samsung Galaxy", category_id=1, stock=0.0),
            _product(3, name="Apple Watch", category_id=2, brand_id=7),
        ])
        self.assertEqual([p.id for p in store.search_products(self.conn, "apple")], [1, 3])
        self.assertEqual({p.id for p in store.products_by_category(self.conn, 1)}, {1, 2})
        self.assertEqual({p.id for p in store.products_by_brand(self.conn, 7)}, {1, 3})
        self.assertEqual({p.id for p in store.in_stock_products(self.conn)}, {1, 3})
        self.assertEqual([p.id for p in store.filter_products(self.conn, query="apple", category_id=2)], [3])

    def test_commit_sale_assigns_ids_to_sale_lines_and_payments(self):
        sale = self._sale()
        lines = [_line(1), _line(2, name="Product 2")]
        payments = [Payment(payment_method_id=1, amount=50.0, change=30.0)]
        local_id = store.commit_sale(self.conn, sale, lines, payments)
        self.assertEqual(sale.local_id, local_id)
        self.assertTrue(sale.receipt_id)
        self.assertTrue(all(line.sale_local_id == local_id for line in lines))
        self.assertEqual(payments[0].sale_local_id, local_id)
        stored = store.get_sale(self.conn, local_id)
        self.assertFalse(stored.synced)
        self.assertIsNone(stored.server_id)
        self.assertEqual(len(store.get_sale_lines(self.conn, local_id)), 2)
        self.assertEqual(store.get_payments(self.conn, local_id)[0].change, 30.0)

    def test_commit_sale_rolls_back_when_a_line_fails(self):
        broken = _line(2)
        broken.product_name_snapshot = None
        with self.assertRaises(sqlite3.Error):
            store.commit_sale(self.conn, self._sale(), [_line(1), broken], [])
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM sales").fetchone()[0], 0)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM sale_lines").fetchone()[0], 0)

    def test_commit_sale_without_lines_is_refused(self):
        with self.assertRaises(ValueError):
            store.commit_sale(self.conn, self._sale(), [], [])

    def test_mark_sale_synced_only_once(self):
        first = store.commit_sale(self.conn, self._sale(), [_line()], [])
        second = store.commit_sale(self.conn, self._sale(), [_line()], [])
        self.assertEqual([s.local_id for s in store.list_unsynced_sales(self.conn)], [first, second])
        self.assertTrue(store.mark_sale_synced(self.conn, first, 501))
        self.assertFalse(store.mark_sale_synced(self.conn, first, 999))
        self.assertEqual(store.get_sale(self.conn, first).server_id, 501)
        self.assertEqual([s.local_id for s in store.list_unsynced_sales(self.conn)], [second])

    def test_upload_failures_are_counted_apart_from_the_sale(self):
        local_id = store.commit_sale(self.conn, self._sale(), [_line()], [])
        before = store.get_sale(self.conn, local_id)
        store.record_upload_failure(self.conn, store.JOB_SALES, local_id, "HTTP 500")
        store.record_upload_failure(self.conn, store.JOB_SALES, local_id, "timeout")
        info = store.upload_attempts(self.conn, store.JOB_SALES, local_id)
        self.assertEqual(info["attempts"], 2)
        self.assertEqual(info["last_error"], "timeout")
        self.assertEqual(store.get_sale(self.conn, local_id), before)
        store.mark_sale_synced(self.conn, local_id, 7)
        self.assertEqual(store.upload_attempts(self.conn, store.JOB_SALES, local_id)["attempts"], 0)

    def test_single_default_client_and_warehouse(self):
        store.upsert_clients(self.conn, [Client(id=1, name="Walk-in"), Client(id=2, name="Acme")], default_id=1)
        store.upsert_clients(self.conn, [Client(id=2, name="Acme")], default_id=2)
        self.assertEqual(store.get_default_client(self.conn).id, 2)
        defaults = [c for c in store.list_clients(self.conn) if c.is_default]
        self.assertEqual(len(defaults), 1)
        store.upsert_warehouses(self.conn, [Warehouse(id=3, name="Shop"), Warehouse(id=4, name="Depot")],
                                default_id=4)
        self.assertEqual(store.get_default_warehouse(self.conn).id, 4)

    def test_lookup_tables_are_replaced(self):
        store.replace_payment_methods(self.conn, [NamedRef(1, "Cash"), NamedRef(2, "Card")])
        store.replace_payment_methods(self.conn, [NamedRef(3, "Mobile")])
        self.assertEqual([m.name for m in store.list_payment_methods(self.conn)], ["Mobile"])

    def test_drafts_save_list_and_delete(self):
        draft = Draft(client_id=1, warehouse_id=1, grand_total=20.0)
        local_id = store.save_draft(self.conn, draft, [_line()])
        self.assertTrue(draft.receipt_id)
        self.assertEqual([d.local_id for d in store.list_unsynced_drafts(self.conn)], [local_id])
        self.assertEqual(len(store.get_draft_lines(self.conn, local_id)), 1)
        self.assertTrue(store.mark_draft_synced(self.conn, local_id, 88))
        self.assertEqual(store.list_unsynced_drafts(self.conn), [])
        self.assertTrue(store.delete_draft(self.conn, local_id))
        self.assertFalse(store.delete_draft(self.conn, local_id))
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM draft_lines").fetchone()[0], 0)

    def test_sync_status_flags_and_timestamps(self):
        status = store.get_sync_status(self.conn)
        self.assertFalse(status.sync_in_progress)
        store.set_sync_in_progress(self.conn, store.JOB_SALES, True)
        status = store.get_sync_status(self.conn)
        self.assertTrue(status.sale_sync_in_progress)
        self.assertFalse(status.product_sync_in_progress)
        self.assertTrue(status.sync_in_progress)
        store.update_last_sync(self.conn, store.JOB_PRODUCTS, 1234)
        store.clear_sync_flags(self.conn)
        status = store.get_sync_status(self.conn)
        self.assertEqual(status.last_product_sync, 1234)
        self.assertFalse(status.sync_in_progress)

    def test_schema_version_change_recreates_tables(self):
        store.upsert_products(self.conn, [_product(1)])
        self.conn.execute("PRAGMA user_version = 1")
        self.conn.close()
        self.conn = store.connect(self.db_path)
        self.assertEqual(store.product_count(self.conn), 0)
        self.assertEqual(self.conn.execute("PRAGMA user_version").fetchone()[0], store.SCHEMA_VERSION)

    def test_sales_summary(self):
        store.commit_sale(self.conn, self._sale(total=30.0, created_at=5000),
                          [_line(1, qty=3.0, name="Tea")], [])
        store.commit_sale(self.conn, self._sale(total=10.0, created_at=6000),
                          [_line(2, qty=1.0, name="Cake")], [])
        store.commit_sale(self.conn, self._sale(total=99.0, created_at=10), [_line(3, name="Old")], [])
        summary = store.sales_summary(self.conn, 1000)
        self.assertEqual(summary["total_sales"], 40.0)
        self.assertEqual(summary["total_transactions"], 2)
        self.assertEqual(summary["average_sale"], 20.0)
        self.assertEqual(summary["top_product"], "Tea")
        empty = store.sales_summary(self.conn, 10 ** 15)
        self.assertEqual(empty["average_sale"], 0.0)
        self.assertIsNone(empty["top_product"])

    def test_receipt_uses_name_snapshot(self):
        store.upsert_products(self.conn, [_product(1, name="Green Tea")])
        local_id = store.commit_sale(
            self.conn, self._sale(total=20.0), [_line(1, name="Green Tea")],
            [Payment(payment_method_id=1, amount=25.0, change=5.0)],
        )
        store.upsert_products(self.conn, [_product(1, name="Renamed Tea")])
        text = receipt_for(self.conn, local_id, currency="gbp")
        self.assertIn("Green Tea", text)
        self.assertNotIn("Renamed Tea", text)
        self.assertIn("GBP 20.00", text)
        self.assertIn("Change", text)
        self.assertIsNone(receipt_for(self.conn, 999))


if __name__ == "__main__":
    unittest.main()
