"""
Sale Upload Engine

Pushes locally committed sales (and saved drafts) that the server has not
acknowledged yet. Each record is sent on its own; a failure is recorded in
``upload_attempts`` and the loop moves on. The sale row itself only changes
when the server answers with success and an id.
"""
import logging
import sqlite3
import threading
from contextlib import closing
from typing import Optional

import pos_store as store
from pos_config import KEY_LAST_SALE_SYNC, ConfigStore
from pos_errors import DecodeError, Err, JobOutcome, Ok, Result, ServerError, StorageError
from pos_gateway import RemoteGateway
from pos_models import Draft, Sale, build_draft_request, build_sale_request

logger = logging.getLogger(__name__)


def _acknowledged(result: Result) -> Result:
    """Turn a submit response into Ok(server_id) only for success with an id."""
    if not result.ok:
        return result
    answer = result.value
    if not answer.success:
        return Err(ServerError(200, "server reported success=false"))
    if not answer.server_id:
        return Err(DecodeError("success without an id"))
    return Ok(answer.server_id)


class SaleUploader:
    def __init__(self, gateway: RemoteGateway, db_path: str, config: Optional[ConfigStore] = None):
        self.gateway = gateway
        self.db_path = db_path
        self.config = config
        self._stop = threading.Event()

    def cancel(self):
        self._stop.set()

    def reset(self):
        self._stop.clear()

    def upload_sale(self, conn: sqlite3.Connection, sale: Sale) -> Result:
        lines = store.get_sale_lines(conn, sale.local_id)
        payments = store.get_payments(conn, sale.local_id)
        if not lines:
            return Err(StorageError(f"sale {sale.local_id} has no lines"))
        result = _acknowledged(self.gateway.submit_sale(build_sale_request(sale, lines, payments)))
        if not result.ok:
            store.record_upload_failure(conn, store.JOB_SALES, sale.local_id, result.error.message)
            return result
        store.mark_sale_synced(conn, sale.local_id, result.value)
        return result

    def upload_pending_sales(self) -> JobOutcome:
        with closing(store.connect(self.db_path)) as conn:
            pending = store.list_unsynced_sales(conn)
            if not pending:
                return JobOutcome.success("No unsynced sales")
            succeeded = failed = 0
            last_error = None
            for sale in pending:
                if self._stop.is_set():
                    logger.info("Sale upload cancelled after %s/%s sales", succeeded + failed, len(pending))
                    break
                try:
                    result = self.upload_sale(conn, sale)
                except sqlite3.Error as exc:
                    logger.exception("Local store failed while uploading sale %s", sale.local_id)
                    result = Err(StorageError(str(exc)))
                if result.ok:
                    succeeded += 1
                    logger.info("Uploaded sale %s (receipt %s) -> server id %s",
                                sale.local_id, sale.receipt_id, result.value)
                else:
                    failed += 1
                    last_error = result.error
                    logger.warning("Failed uploading sale %s: %s", sale.local_id, result.error.message)

            if succeeded > 0:
                stamp = store.update_last_sync(conn, store.JOB_SALES)
                if self.config is not None:
                    self.config.set(KEY_LAST_SALE_SYNC, stamp)
                return JobOutcome.success(f"Uploaded {succeeded} of {len(pending)} sales",
                                          succeeded=succeeded, failed=failed)
            return JobOutcome.retry(f"All {failed} sale uploads failed" if failed else "Sale upload cancelled",
                                    failed=failed, error=last_error)

    def upload_draft(self, conn: sqlite3.Connection, draft: Draft) -> Result:
        lines = store.get_draft_lines(conn, draft.local_id)
        result = _acknowledged(self.gateway.submit_draft(build_draft_request(draft, lines)))
        if not result.ok:
            store.record_upload_failure(conn, store.JOB_DRAFTS, draft.local_id, result.error.message)
            return result
        store.mark_draft_synced(conn, draft.local_id, result.value)
        return result

    def upload_pending_drafts(self) -> JobOutcome:
        with closing(store.connect(self.db_path)) as conn:
            pending = store.list_unsynced_drafts(conn)
            if not pending:
                return JobOutcome.success("No unsynced drafts")
            succeeded = failed = 0
            last_error = None
            for draft in pending:
                if self._stop.is_set():
                    break
                try:
                    result = self.upload_draft(conn, draft)
                except sqlite3.Error as exc:
                    logger.exception("Local store failed while uploading draft %s", draft.local_id)
                    result = Err(StorageError(str(exc)))
                if result.ok:
                    succeeded += 1
                else:
                    failed += 1
                    last_error = result.error
                    logger.warning("Failed uploading draft %s: %s", draft.local_id, result.error.message)
            if succeeded > 0:
                store.update_last_sync(conn, store.JOB_DRAFTS)
                return JobOutcome.success(f"Uploaded {succeeded} of {len(pending)} drafts",
                                          succeeded=succeeded, failed=failed)
            return JobOutcome.retry(f"All {failed} draft uploads failed", failed=failed, error=last_error)

    def delete_remote_draft(self, draft_id: int) -> Result:
        result = self.gateway.delete_draft(draft_id)
        if result.ok and not result.value.success:
            return Err(ServerError(200, f"server refused to delete draft {draft_id}"))
        return result
