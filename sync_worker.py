#!/usr/bin/env python3
"""
POS Sync Worker

Runs the catalog sync and sale upload jobs, on their own intervals and on
demand. A job that is triggered while it is already running is not started
twice: the trigger is remembered and the job runs once more when the current
pass ends. Catalog sync and sale upload run independently of each other.

Modes (SYNC_MODE or first CLI argument):
  - loop:   periodic catalog sync + sale upload until Ctrl+C (default)
  - once:   one catalog sync and one sale upload, then exit
  - setup:  fetch bootstrap data, store defaults, load the catalog

Env vars:
  POS_DB_PATH                SQLite DB path (default: pos.db)
  POS_PRODUCT_SYNC_INTERVAL  seconds between catalog syncs (default: 3600)
  POS_SALE_UPLOAD_INTERVAL   seconds between sale uploads (default: 300)

Run:
  python sync_worker.py [loop|once|setup]
"""
import logging
import os
import sys
import threading
from contextlib import closing
from typing import Any, Callable, Dict, Optional

import pos_store as store
from catalog_sync import CatalogSync, make_catalog_sync, setup_pos
from pos_config import (
    POS_DB_PATH, PRODUCT_SYNC_INTERVAL, SALE_UPLOAD_INTERVAL, ConfigStore, configure_logging,
)
from pos_errors import Err, JobOutcome, JobStatus, Result, SyncAbortedError
from pos_gateway import RemoteGateway
from sale_upload import SaleUploader

logger = logging.getLogger(__name__)


class _Job:
    """One job type: a coalescing trigger plus an optional periodic timer."""

    def __init__(self, name: str, run: Callable[..., JobOutcome], interval: float,
                 before_pass: Optional[Callable[[], None]] = None):
        self.name = name
        self.run = run
        self.interval = interval
        self.before_pass = before_pass
        self.last_outcome: Optional[JobOutcome] = None
        self._state = threading.Lock()
        self._running = False
        self._pending = False
        self._worker: Optional[threading.Thread] = None
        self._timer_stop = threading.Event()
        self._timer: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        with self._state:
            return self._running

    def trigger(self, **options) -> bool:
        """Start a pass now, or queue one rerun if a pass is in flight. True if a new pass started.

        ``options`` go to the pass started here; a queued rerun runs with none.
        """
        with self._state:
            if self._running:
                self._pending = True
                logger.debug("%s already running; rerun queued", self.name)
                return False
            self._running = True
            self._pending = False
            self._worker = threading.Thread(target=self._drain, args=(options,), name=f"sync-{self.name}",
                                            daemon=True)
            self._worker.start()
        return True

    def _drain(self, options: Dict[str, Any]):
        while True:
            # Every pass starts uncancelled, including a rerun queued after cancel_all.
            if self.before_pass:
                self.before_pass()
            try:
                self.last_outcome = self.run(**options)
            except Exception as exc:
                logger.exception("%s job crashed", self.name)
                self.last_outcome = JobOutcome.retry(f"{self.name} job crashed: {exc}")
            options = {}
            with self._state:
                if self._pending:
                    self._pending = False
                    continue
                self._running = False
                return

    def cancel_pending(self):
        with self._state:
            self._pending = False

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._state:
            worker = self._worker
        if worker is not None:
            worker.join(timeout)
        return not self.running

    def start_timer(self, trigger: Callable[[], bool], run_now: bool = True):
        if self._timer and self._timer.is_alive():
            return
        self._timer_stop.clear()

        def _loop():
            if run_now:
                trigger()
            while not self._timer_stop.wait(self.interval):
                trigger()

        self._timer = threading.Thread(target=_loop, name=f"timer-{self.name}", daemon=True)
        self._timer.start()

    def stop_timer(self):
        self._timer_stop.set()


class SyncScheduler:
    def __init__(
        self,
        catalog: CatalogSync,
        uploader: SaleUploader,
        db_path: str,
        config: ConfigStore,
        product_interval: float = PRODUCT_SYNC_INTERVAL,
        sale_interval: float = SALE_UPLOAD_INTERVAL,
    ):
        self.catalog = catalog
        self.uploader = uploader
        self.db_path = db_path
        self.config = config
        self.products = _Job(store.JOB_PRODUCTS, self._run_product_sync, product_interval,
                             before_pass=catalog.reset)
        self.sales = _Job(store.JOB_SALES, self._run_sale_upload, sale_interval, before_pass=uploader.reset)
        with closing(store.connect(db_path)) as conn:
            store.clear_sync_flags(conn)

    def _set_flag(self, job: str, flag: bool):
        with closing(store.connect(self.db_path)) as conn:
            store.set_sync_in_progress(conn, job, flag)

    def _run_product_sync(self, on_first_page: Optional[Callable[[Result], None]] = None) -> JobOutcome:
        """One catalog pass. ``on_first_page`` is called exactly once, even when the
        pass is skipped or stops before page 1."""
        reported = threading.Event()

        def _first_page(result: Result):
            reported.set()
            if on_first_page is not None:
                on_first_page(result)

        try:
            return self._sync_catalog(_first_page)
        finally:
            if on_first_page is not None and not reported.is_set():
                on_first_page(Err(SyncAbortedError("catalog sync ended before page 1")))

    def _sync_catalog(self, on_first_page: Callable[[Result], None]) -> JobOutcome:
        warehouse_id = self.config.default_warehouse()
        if not warehouse_id:
            logger.info("Catalog sync skipped: POS not set up (no default warehouse)")
            return JobOutcome.skipped("no warehouse configured")
        self.catalog.page_size = self.config.products_per_page()
        self._set_flag(store.JOB_PRODUCTS, True)
        try:
            result = self.catalog.sync_all(warehouse_id, on_first_page=on_first_page)
        finally:
            self._set_flag(store.JOB_PRODUCTS, False)
        if result.ok:
            report = result.value
            return JobOutcome.success(f"Synced {report.products_synced} products",
                                      succeeded=report.pages_fetched - len(report.failed_pages),
                                      failed=len(report.failed_pages))
        logger.warning("Catalog sync will retry later: %s", result.error.message)
        return JobOutcome.retry(result.error.message, error=result.error)

    def _run_sale_upload(self) -> JobOutcome:
        self._set_flag(store.JOB_SALES, True)
        try:
            outcome = self.uploader.upload_pending_sales()
            drafts = self.uploader.upload_pending_drafts()
        finally:
            self._set_flag(store.JOB_SALES, False)
        if drafts.status == JobStatus.RETRY:
            logger.warning("Draft upload will retry later: %s", drafts.detail)
        logger.info("Sale upload: %s", outcome.detail)
        return outcome

    # ---- public surface ----
    def trigger_product_sync(self, on_first_page: Optional[Callable[[Result], None]] = None) -> bool:
        return self.products.trigger(on_first_page=on_first_page)

    def trigger_sale_upload(self) -> bool:
        return self.sales.trigger()

    def start_periodic(self, run_now: bool = True):
        logger.info("Periodic sync: catalog every %ss, sales every %ss",
                    self.products.interval, self.sales.interval)
        self.products.start_timer(self.trigger_product_sync, run_now=run_now)
        self.sales.start_timer(self.trigger_sale_upload, run_now=run_now)

    def cancel_all(self):
        """Stop timers and queued reruns. Requests already sent are left to finish."""
        for job in (self.products, self.sales):
            job.stop_timer()
            job.cancel_pending()
        self.catalog.cancel()
        self.uploader.cancel()
        logger.info("All sync work cancelled")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.products.wait(timeout) and self.sales.wait(timeout)

    def status(self) -> Dict[str, object]:
        with closing(store.connect(self.db_path)) as conn:
            data = store.get_sync_status(conn).to_dict()
            data["pending_sales"] = len(store.list_unsynced_sales(conn))
            data["pending_drafts"] = len(store.list_unsynced_drafts(conn))
        for job in (self.products, self.sales):
            data[f"{job.name}_last_outcome"] = job.last_outcome.to_dict() if job.last_outcome else None
        return data


def build_scheduler(db_path: str, config: ConfigStore, gateway: Optional[RemoteGateway] = None) -> SyncScheduler:
    gateway = gateway or RemoteGateway(config.api_base_url)
    return SyncScheduler(
        catalog=make_catalog_sync(gateway, db_path, config),
        uploader=SaleUploader(gateway, db_path, config),
        db_path=db_path,
        config=config,
    )


def main():
    configure_logging()
    mode = (sys.argv[1] if len(sys.argv) > 1 else os.environ.get("SYNC_MODE") or "loop").strip().lower()
    config = ConfigStore()
    gateway = RemoteGateway(config.api_base_url)
    logger.info("Starting sync worker mode=%s db=%s api=%s", mode, POS_DB_PATH, config.api_base_url())

    scheduler = build_scheduler(POS_DB_PATH, config, gateway)
    if mode == "setup":
        result = setup_pos(gateway, POS_DB_PATH, config, scheduler)
        if not result.ok:
            logger.error("Setup failed: %s", result.error.user_message())
            sys.exit(1)
        scheduler.wait_idle()
        logger.info("Setup complete: %s", scheduler.products.last_outcome)
        return

    if mode == "once":
        scheduler.trigger_product_sync()
        scheduler.trigger_sale_upload()
        scheduler.wait_idle()
        for job in (scheduler.products, scheduler.sales):
            logger.info("%s: %s", job.name, job.last_outcome)
        return

    scheduler.start_periodic()
    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Exiting on Ctrl+C")
        scheduler.cancel_all()


if __name__ == "__main__":
    main()
