import os
import tempfile
import threading
import unittest
from contextlib import closing

import pos_store as store
from catalog_sync import CatalogSync, setup_pos, validate_bootstrap
from pos_config import (
    KEY_DEFAULT_CLIENT, KEY_DEFAULT_PAYMENT_METHOD, KEY_DEFAULT_WAREHOUSE, KEY_LAST_PRODUCT_SYNC,
    KEY_PRODUCTS_PER_PAGE, ConfigStore,
)
from pos_errors import ConfigurationError, Err, JobStatus, NetworkError, Ok, ServerError, SyncAbortedError
from pos_models import Bootstrap, Product, ProductPage
from sale_upload import SaleUploader
from sync_worker import SyncScheduler

PAGE_SIZE = 3


def _page(first_id, count):
    return [Product(id=i, code=f"P{i}", name=f"Product {i}", qte_available_for_sale=4.0, price=1.0)
            for i in range(first_id, first_id + count)]


class ScriptedGateway:
    """Answers catalog pages from a dict; a PosError value fails that page."""

    def __init__(self, pages=None, default=None, bootstrap=None):
        self.pages = pages or {}
        self.default = default
        self.bootstrap = bootstrap
        self.requested = []

    def fetch_products_page(self, warehouse_id, page, category_id=None, brand_id=None, in_stock=False):
        self.requested.append(page)
        answer = self.pages.get(page, self.default)
        if answer is None:
            return Ok(ProductPage(products=[]))
        if isinstance(answer, Exception):
            return Err(answer)
        return Ok(ProductPage(products=answer, total_rows=0))

    def fetch_bootstrap(self):
        return self.bootstrap


class GatedGateway(ScriptedGateway):
    """Holds each page-2 fetch until ``gate`` opens and records overlapping fetches."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = threading.Event()
        self.at_gate = threading.Event()
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def fetch_products_page(self, warehouse_id, page, **kwargs):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if page == 2:
                self.at_gate.set()
                self.gate.wait(5)
            return super().fetch_products_page(warehouse_id, page, **kwargs)
        finally:
            with self._lock:
                self.active -= 1


class CatalogSyncTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "pos.db")
        self.config = ConfigStore(os.path.join(self.tmp.name, "config.json"))

    def tearDown(self):
        self.tmp.cleanup()

    def _count(self):
        with closing(store.connect(self.db_path)) as conn:
            return store.product_count(conn)

    def _sync(self, gateway, **kwargs):
        return CatalogSync(gateway, self.db_path, page_size=PAGE_SIZE, config=self.config, **kwargs)

    def test_n_full_pages_then_short_page(self):
        gateway = ScriptedGateway({1: _page(1, 3), 2: _page(4, 3), 3: _page(7, 3), 4: _page(10, 1)})
        result = self._sync(gateway).sync_all(warehouse_id=1)
        self.assertTrue(result.ok)
        self.assertEqual(gateway.requested, [1, 2, 3, 4])
        self.assertEqual(result.value.products_synced, 10)
        self.assertEqual(self._count(), 10)

    def test_empty_page_ends_pagination(self):
        gateway = ScriptedGateway({1: _page(1, 3)})
        result = self._sync(gateway).sync_all(1)
        self.assertTrue(result.ok)
        self.assertEqual(gateway.requested, [1, 2])

    def test_single_failed_page_is_skipped(self):
        gateway = ScriptedGateway({1: _page(1, 3), 2: NetworkError("timeout"), 3: _page(7, 3), 4: _page(10, 2)})
        result = self._sync(gateway).sync_all(1)
        self.assertTrue(result.ok)
        self.assertEqual(gateway.requested, [1, 2, 3, 4])
        self.assertEqual(result.value.failed_pages, [2])
        self.assertEqual(self._count(), 8)

    def test_success_resets_the_failure_budget(self):
        gateway = ScriptedGateway({
            1: ServerError(500), 2: ServerError(500), 3: _page(1, 3),
            4: ServerError(502), 5: ServerError(502), 6: _page(4, 1),
        })
        result = self._sync(gateway).sync_all(1)
        self.assertTrue(result.ok)
        self.assertEqual(result.value.failed_pages, [1, 2, 4, 5])
        self.assertEqual(self._count(), 4)

    def test_consecutive_failures_abort(self):
        gateway = ScriptedGateway({1: _page(1, 3)}, default=NetworkError("down"))
        result = self._sync(gateway).sync_all(1)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, SyncAbortedError)
        self.assertIsInstance(result.error.cause, NetworkError)
        self.assertEqual(gateway.requested, [1, 2, 3, 4])
        self.assertEqual(self._count(), 3)
        with closing(store.connect(self.db_path)) as conn:
            self.assertEqual(store.get_sync_status(conn).last_product_sync, 0)

    def test_page_ceiling_is_fatal(self):
        gateway = ScriptedGateway(default=_page(1, 3))
        result = self._sync(gateway, max_pages=5).sync_all(1)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, SyncAbortedError)
        self.assertEqual(gateway.requested, [1, 2, 3, 4, 5])

    def test_success_records_last_sync(self):
        gateway = ScriptedGateway({1: _page(1, 2)})
        self._sync(gateway).sync_all(1)
        with closing(store.connect(self.db_path)) as conn:
            stamp = store.get_sync_status(conn).last_product_sync
        self.assertGreater(stamp, 0)
        self.assertEqual(self.config.get(KEY_LAST_PRODUCT_SYNC), stamp)

    def test_cancelled_sync_stops_before_next_page(self):
        gateway = ScriptedGateway({1: _page(1, 2)})
        sync = self._sync(gateway)
        sync.cancel()
        result = sync.sync_all(1)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, SyncAbortedError)
        self.assertEqual(gateway.requested, [])
        sync.reset()
        self.assertTrue(sync.sync_all(1).ok)

    def test_first_page_is_reported_before_the_rest(self):
        gateway = ScriptedGateway({1: _page(1, 3), 2: _page(4, 3), 3: _page(7, 2)})
        seen = []
        result = self._sync(gateway).sync_all(
            1, on_first_page=lambda first: seen.append((first.value, list(gateway.requested))))
        self.assertEqual(seen, [(3, [1])])
        self.assertEqual(result.value.products_synced, 8)
        self.assertEqual(gateway.requested, [1, 2, 3])
        self.assertEqual(self._count(), 8)

    def test_failed_first_page_is_reported_as_err(self):
        gateway = ScriptedGateway({1: NetworkError("timeout"), 2: _page(1, 2)})
        seen = []
        result = self._sync(gateway).sync_all(1, on_first_page=seen.append)
        self.assertEqual(len(seen), 1)
        self.assertIsInstance(seen[0].error, NetworkError)
        self.assertTrue(result.ok)
        self.assertEqual(result.value.failed_pages, [1])

    def test_page_size_must_be_positive(self):
        with self.assertRaises(ValueError):
            CatalogSync(ScriptedGateway(), self.db_path, page_size=0)


BOOTSTRAP = {
    "defaultWarehouse": 2,
    "defaultClient": "5",
    "default_client_name": "Walk-in",
    "products_per_page": 3,
    "clients": [{"id": 5, "name": "Walk-in"}, {"id": 6, "name": "Acme", "adresse": "1 Main St"}],
    "warehouses": [{"id": 1, "name": "Depot"}, {"id": 2, "name": "Shop"}],
    "payment_methods": [{"id": 1, "name": "Cash"}, {"id": 2, "name": "Card"}],
    "categories": [{"id": 1, "name": "Drinks"}],
    "brands": [],
}


class SetupTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "pos.db")
        self.config = ConfigStore(os.path.join(self.tmp.name, "config.json"))
        self.scheduler = None

    def tearDown(self):
        if self.scheduler is not None:
            self.scheduler.cancel_all()
            self.scheduler.wait_idle(5)
        self.tmp.cleanup()

    def _scheduler(self, gateway):
        self.scheduler = SyncScheduler(
            CatalogSync(gateway, self.db_path, page_size=PAGE_SIZE, config=self.config),
            SaleUploader(gateway, self.db_path, self.config),
            self.db_path,
            self.config,
        )
        return self.scheduler

    def test_zero_default_warehouse_is_a_configuration_error(self):
        boot = Bootstrap.from_api(dict(BOOTSTRAP, defaultWarehouse=0))
        with self.assertRaises(ConfigurationError) as ctx:
            validate_bootstrap(boot)
        self.assertEqual(ctx.exception.message, "no warehouse")

    def test_empty_default_client_is_a_configuration_error(self):
        boot = Bootstrap.from_api(dict(BOOTSTRAP, defaultClient=""))
        with self.assertRaises(ConfigurationError) as ctx:
            validate_bootstrap(boot)
        self.assertEqual(ctx.exception.message, "no client")

    def test_setup_refuses_bootstrap_without_warehouse(self):
        gateway = ScriptedGateway(bootstrap=Ok(Bootstrap.from_api(dict(BOOTSTRAP, defaultWarehouse=0))))
        scheduler = self._scheduler(gateway)
        result = setup_pos(gateway, self.db_path, self.config, scheduler)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, ConfigurationError)
        self.assertIsNone(self.config.default_warehouse())
        self.assertIsNone(scheduler.products.last_outcome)
        self.assertEqual(gateway.requested, [])

    def test_setup_passes_gateway_errors_through(self):
        gateway = ScriptedGateway(bootstrap=Err(NetworkError("offline")))
        result = setup_pos(gateway, self.db_path, self.config, self._scheduler(gateway))
        self.assertIsInstance(result.error, NetworkError)

    def test_setup_persists_defaults_and_loads_catalog(self):
        gateway = ScriptedGateway({1: _page(1, 3), 2: _page(4, 1)},
                                  bootstrap=Ok(Bootstrap.from_api(BOOTSTRAP)))
        scheduler = self._scheduler(gateway)
        result = setup_pos(gateway, self.db_path, self.config, scheduler)
        self.assertTrue(result.ok)
        self.assertEqual(result.value.first_page_count, 3)
        self.assertTrue(result.value.loading_more)
        self.assertTrue(scheduler.wait_idle(5))
        self.assertEqual(self.config.get(KEY_DEFAULT_WAREHOUSE), 2)
        self.assertEqual(self.config.get(KEY_DEFAULT_CLIENT), 5)
        self.assertEqual(self.config.get(KEY_DEFAULT_PAYMENT_METHOD), 1)
        self.assertEqual(self.config.products_per_page(), 3)
        with closing(store.connect(self.db_path)) as conn:
            self.assertEqual(store.get_default_warehouse(conn).id, 2)
            self.assertEqual(store.get_default_client(conn).id, 5)
            self.assertEqual(len(store.list_payment_methods(conn)), 2)
            self.assertEqual(store.product_count(conn), 4)
        self.assertEqual(gateway.requested, [1, 2])
        self.assertEqual(scheduler.products.last_outcome.status, JobStatus.SUCCESS)

    def test_setup_with_short_first_page_has_nothing_more_to_load(self):
        gateway = ScriptedGateway({1: _page(1, 2)}, bootstrap=Ok(Bootstrap.from_api(BOOTSTRAP)))
        result = setup_pos(gateway, self.db_path, self.config, self._scheduler(gateway))
        self.assertEqual(result.value.first_page_count, 2)
        self.assertFalse(result.value.loading_more)

    def test_setup_survives_a_failed_first_page(self):
        gateway = ScriptedGateway({1: ServerError(503), 2: _page(1, 1)},
                                  bootstrap=Ok(Bootstrap.from_api(BOOTSTRAP)))
        scheduler = self._scheduler(gateway)
        result = setup_pos(gateway, self.db_path, self.config, scheduler)
        self.assertTrue(result.ok)
        self.assertEqual(result.value.first_page_count, 0)
        self.assertTrue(result.value.loading_more)
        self.assertTrue(scheduler.wait_idle(5))
        self.assertEqual(gateway.requested, [1, 2])

    def test_setup_catalog_load_runs_as_the_product_job(self):
        gateway = GatedGateway({1: _page(1, 3), 2: _page(4, 1)}, bootstrap=Ok(Bootstrap.from_api(BOOTSTRAP)))
        scheduler = self._scheduler(gateway)
        result = setup_pos(gateway, self.db_path, self.config, scheduler)
        self.assertTrue(result.value.loading_more)
        self.assertTrue(gateway.at_gate.wait(5))
        self.assertTrue(scheduler.products.running)
        with closing(store.connect(self.db_path)) as conn:
            self.assertTrue(store.get_sync_status(conn).product_sync_in_progress)

        # A manual sync while setup's pages are loading is queued, not run alongside.
        self.assertFalse(scheduler.trigger_product_sync())
        gateway.gate.set()
        self.assertTrue(scheduler.wait_idle(5))
        self.assertEqual(gateway.max_active, 1)
        self.assertEqual(gateway.requested, [1, 2, 1, 2])

    def test_cancel_all_stops_the_setup_catalog_load(self):
        gateway = GatedGateway({1: _page(1, 3), 2: _page(4, 3), 3: _page(7, 1)},
                               bootstrap=Ok(Bootstrap.from_api(BOOTSTRAP)))
        scheduler = self._scheduler(gateway)
        setup_pos(gateway, self.db_path, self.config, scheduler)
        self.assertTrue(gateway.at_gate.wait(5))
        scheduler.cancel_all()
        gateway.gate.set()
        self.assertTrue(scheduler.wait_idle(5))
        self.assertEqual(gateway.requested, [1, 2])
        self.assertEqual(scheduler.products.last_outcome.status, JobStatus.RETRY)

    def test_setup_while_a_sync_runs_queues_a_refresh(self):
        self.config.update({KEY_DEFAULT_WAREHOUSE: 2, KEY_PRODUCTS_PER_PAGE: PAGE_SIZE})
        gateway = GatedGateway({1: _page(1, 3), 2: _page(4, 1)}, bootstrap=Ok(Bootstrap.from_api(BOOTSTRAP)))
        scheduler = self._scheduler(gateway)
        self.assertTrue(scheduler.trigger_product_sync())
        self.assertTrue(gateway.at_gate.wait(5))
        result = setup_pos(gateway, self.db_path, self.config, scheduler)
        self.assertTrue(result.value.loading_more)
        self.assertEqual(result.value.first_page_count, 0)
        gateway.gate.set()
        self.assertTrue(scheduler.wait_idle(5))
        self.assertEqual(gateway.max_active, 1)
        self.assertEqual(gateway.requested, [1, 2, 1, 2])


if __name__ == "__main__":
    unittest.main()
