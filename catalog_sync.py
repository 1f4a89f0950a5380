"""
Catalog Sync Engine

Pages through the remote product list and upserts each page into the local
store. A failed page counts against a consecutive-failure budget and the
engine moves on to the next page; a successful page resets the budget.
Pagination ends on the first page shorter than the configured page size.
Going past the page ceiling aborts the run.

Also hosts the bootstrap setup flow (``setup_pos``) which validates the
server defaults, caches lookups, and kicks off the first catalog sync.
"""
import logging
import sqlite3
import threading
from contextlib import closing
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import pos_store as store
from pos_config import (
    KEY_DEFAULT_CLIENT, KEY_DEFAULT_PAYMENT_METHOD, KEY_DEFAULT_WAREHOUSE, KEY_LAST_PRODUCT_SYNC,
    KEY_PRODUCTS_PER_PAGE, MAX_CONSECUTIVE_FAILURES, MAX_PAGES, ConfigStore,
)
from pos_errors import ConfigurationError, Err, Ok, Result, StorageError, SyncAbortedError
from pos_gateway import RemoteGateway
from pos_models import Bootstrap

logger = logging.getLogger(__name__)


@dataclass
class CatalogSyncReport:
    pages_fetched: int = 0
    products_synced: int = 0
    failed_pages: List[int] = field(default_factory=list)


class CatalogSync:
    def __init__(
        self,
        gateway: RemoteGateway,
        db_path: str,
        page_size: int,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
        max_pages: int = MAX_PAGES,
        config: Optional[ConfigStore] = None,
    ):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.gateway = gateway
        self.db_path = db_path
        self.page_size = page_size
        self.max_consecutive_failures = max(1, max_consecutive_failures)
        self.max_pages = max_pages
        self.config = config
        self._stop = threading.Event()

    def cancel(self):
        """Stop between pages. A page request already in flight is allowed to finish."""
        self._stop.set()

    def reset(self):
        self._stop.clear()

    def sync_page(self, conn: sqlite3.Connection, warehouse_id: int, page: int) -> Result:
        """Fetch one page and upsert it. Ok(count) or Err(error)."""
        result = self.gateway.fetch_products_page(warehouse_id, page)
        if not result.ok:
            return result
        products = result.value.products
        try:
            store.upsert_products(conn, products)
        except sqlite3.Error as exc:
            logger.exception("Upsert of catalog page %s failed", page)
            return Err(StorageError(str(exc)))
        return Ok(len(products))

    def _run_pages(self, conn: sqlite3.Connection, warehouse_id: int, start_page: int,
                   report: CatalogSyncReport, on_first_page: Optional[Callable[[Result], None]] = None) -> Result:
        page = start_page
        consecutive_failures = 0
        while True:
            if self._stop.is_set():
                return Err(SyncAbortedError("catalog sync cancelled"))
            if page > self.max_pages:
                logger.error("Catalog sync passed %s pages; aborting", self.max_pages)
                return Err(SyncAbortedError(f"Too many pages (>{self.max_pages}), possible infinite loop"))
            result = self.sync_page(conn, warehouse_id, page)
            report.pages_fetched += 1
            if on_first_page is not None and page == start_page:
                on_first_page(result)
            if result.ok:
                consecutive_failures = 0
                count = result.value
                report.products_synced += count
                logger.debug("Catalog page %s: %s products", page, count)
                if count < self.page_size:
                    return Ok(report)
            else:
                consecutive_failures += 1
                report.failed_pages.append(page)
                logger.warning("Catalog page %s failed (%s/%s): %s", page, consecutive_failures,
                               self.max_consecutive_failures, result.error.message)
                if consecutive_failures >= self.max_consecutive_failures:
                    return Err(SyncAbortedError(
                        f"{consecutive_failures} consecutive page failures", cause=result.error,
                    ))
            page += 1

    def _finish(self, conn: sqlite3.Connection, result: Result) -> Result:
        if result.ok:
            stamp = store.update_last_sync(conn, store.JOB_PRODUCTS)
            if self.config is not None:
                self.config.set(KEY_LAST_PRODUCT_SYNC, stamp)
            report = result.value
            logger.info("Catalog sync done: %s products over %s pages (%s failed pages)",
                        report.products_synced, report.pages_fetched, len(report.failed_pages))
        return result

    def sync_all(self, warehouse_id: int, on_first_page: Optional[Callable[[Result], None]] = None) -> Result:
        """Full catalog refresh from page 1. Ok(CatalogSyncReport) or Err(SyncAbortedError).

        ``on_first_page`` gets page 1's Ok(count) or Err as soon as it is stored,
        while the remaining pages carry on in the same call.
        """
        report = CatalogSyncReport()
        with closing(store.connect(self.db_path)) as conn:
            return self._finish(conn, self._run_pages(conn, warehouse_id, 1, report, on_first_page))


# ---------- BOOTSTRAP SETUP ----------
def validate_bootstrap(boot: Bootstrap):
    """Defaults must be real ids. There is no fallback to the first list entry."""
    if boot.default_warehouse_id <= 0:
        raise ConfigurationError("no warehouse")
    if boot.default_client_id <= 0:
        raise ConfigurationError("no client")


@dataclass
class SetupResult:
    bootstrap: Bootstrap
    first_page_count: int = 0
    loading_more: bool = False


def setup_pos(gateway: RemoteGateway, db_path: str, config: ConfigStore, scheduler) -> Result:
    """Fetch bootstrap data, persist defaults and lookups, then load the catalog.

    The catalog load is a regular pass of the scheduler's product job, so it
    never overlaps another catalog sync and ``cancel_all`` reaches it. Setup
    returns once page 1 is stored; later pages continue in that pass.
    """
    fetched = gateway.fetch_bootstrap()
    if not fetched.ok:
        return fetched
    boot: Bootstrap = fetched.value
    try:
        validate_bootstrap(boot)
    except ConfigurationError as exc:
        logger.error("Bootstrap rejected: %s", exc.message)
        return Err(exc)

    try:
        with closing(store.connect(db_path)) as conn:
            store.upsert_warehouses(conn, boot.warehouses, default_id=boot.default_warehouse_id)
            store.upsert_clients(conn, boot.clients, default_id=boot.default_client_id)
            store.replace_payment_methods(conn, boot.payment_methods)
            store.replace_categories(conn, boot.categories)
            store.replace_brands(conn, boot.brands)
    except sqlite3.Error as exc:
        logger.exception("Caching bootstrap lookups failed")
        return Err(StorageError(str(exc)))

    values = {
        KEY_DEFAULT_WAREHOUSE: boot.default_warehouse_id,
        KEY_DEFAULT_CLIENT: boot.default_client_id,
        KEY_PRODUCTS_PER_PAGE: boot.products_per_page,
    }
    if boot.payment_methods and not config.default_payment_method():
        values[KEY_DEFAULT_PAYMENT_METHOD] = boot.payment_methods[0].id
    config.update(values)
    page_size = config.products_per_page()
    logger.info("POS configured: warehouse=%s client=%s page_size=%s",
                boot.default_warehouse_id, boot.default_client_id, page_size)

    first_page: List[Result] = []
    loaded = threading.Event()

    def _first_page(result: Result):
        first_page.append(result)
        loaded.set()

    if not scheduler.trigger_product_sync(on_first_page=_first_page):
        logger.info("Catalog sync already running; a full refresh is queued behind it")
        return Ok(SetupResult(bootstrap=boot, loading_more=True))
    loaded.wait()
    first = first_page[0]
    if not first.ok:
        # Setup itself succeeded; the pass moves on to page 2 and the next run retries page 1.
        logger.warning("First catalog page failed: %s", first.error.message)
        return Ok(SetupResult(bootstrap=boot, loading_more=True))
    return Ok(SetupResult(bootstrap=boot, first_page_count=first.value, loading_more=first.value >= page_size))


def make_catalog_sync(gateway: RemoteGateway, db_path: str, config: ConfigStore) -> CatalogSync:
    return CatalogSync(gateway, db_path, page_size=config.products_per_page(), config=config)


def default_warehouse_or_error(config: ConfigStore) -> int:
    warehouse_id = config.default_warehouse()
    if not warehouse_id:
        raise ConfigurationError("no warehouse")
    return warehouse_id
