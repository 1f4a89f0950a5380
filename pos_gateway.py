"""
Remote Gateway: typed calls against the POS backend over HTTP(S).

Every public method returns ``Ok(value)`` or ``Err(PosError)``; nothing raised
by ``requests`` or by payload decoding escapes to the engines. The base URL is
looked up on each request so a domain change applies without a restart.
"""
import logging
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter

from pos_config import API_TOKEN, HTTP_RETRIES, HTTP_TIMEOUT
from pos_errors import (
    ConnectivityError, DecodeError, Err, NetworkError, Ok, PosError, Result, ServerError,
)
from pos_models import (
    Bootstrap, Client, ProductPage, RemoteDraftSummary, RemoteSaleSummary, SubmitResult, decode_listing,
)

logger = logging.getLogger(__name__)

BOOTSTRAP_PATH = "pos_data.php"
PRODUCTS_PATH = "products.php"
CLIENTS_PATH = "clients.php"
CREATE_SALE_PATH = "create_sale.php"
SALES_PATH = "sales.php"
DRAFTS_PATH = "drafts.php"


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "")[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "")[:200]
    return ""


def _is_dns_failure(exc: requests.ConnectionError) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in (
        "name or service not known", "nodename nor servname", "getaddrinfo failed",
        "temporary failure in name resolution", "failed to resolve", "no address associated",
    ))


class RemoteGateway:
    def __init__(
        self,
        base_url_provider: Callable[[], str],
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self._base_url = base_url_provider
        self.token = token if token is not None else API_TOKEN
        t = float(timeout if timeout is not None else HTTP_TIMEOUT)
        self.timeout: Tuple[float, float] = (t, t)
        self.session = session or requests.Session()
        if session is None:
            # Transport-level retries cover connection failures only; engines own retry policy.
            adapter = HTTPAdapter(max_retries=retries if retries is not None else HTTP_RETRIES)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)

    def close(self):
        self.session.close()

    def url_for(self, path: str) -> str:
        return self._base_url().rstrip("/") + "/" + path.lstrip("/")

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        decode: Optional[Callable[[Any], Any]] = None,
    ) -> Result:
        url = self.url_for(path)
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            resp = self.session.request(
                method, url, params=params, json=body, headers=self._headers(), timeout=self.timeout,
            )
        except requests.ConnectionError as exc:
            if isinstance(exc, requests.exceptions.ConnectTimeout):
                logger.warning("%s %s timed out connecting", method, url)
                return Err(NetworkError("Connection timed out"))
            logger.warning("%s %s unreachable: %s", method, url, exc)
            if _is_dns_failure(exc):
                return Err(ConnectivityError(f"Unable to resolve host for {url}"))
            return Err(ConnectivityError(str(exc)))
        except requests.Timeout:
            logger.warning("%s %s timed out", method, url)
            return Err(NetworkError("Request timed out"))
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            return Err(NetworkError(str(exc)))

        if not 200 <= resp.status_code < 300:
            message = _error_message_from_response(resp)
            logger.warning("%s %s -> HTTP %s %s", method, url, resp.status_code, message)
            return Err(ServerError(resp.status_code, message))
        try:
            payload = resp.json()
        except ValueError:
            return Err(DecodeError(f"{path} returned non-JSON body"))
        if decode is None:
            return Ok(payload)
        try:
            return Ok(decode(payload))
        except PosError as exc:
            logger.warning("Could not decode %s: %s", path, exc.message)
            return Err(exc if isinstance(exc, DecodeError) else DecodeError(exc.message))
        except (TypeError, ValueError, KeyError, AttributeError) as exc:
            logger.warning("Could not decode %s: %s", path, exc)
            return Err(DecodeError(str(exc)))

    # ---------- bootstrap / catalog ----------
    def fetch_bootstrap(self) -> Result:
        return self._request("GET", BOOTSTRAP_PATH, decode=Bootstrap.from_api)

    def fetch_products_page(
        self,
        warehouse_id: int,
        page: int,
        category_id: Optional[int] = None,
        brand_id: Optional[int] = None,
        in_stock: bool = False,
    ) -> Result:
        params = {
            "warehouse_id": warehouse_id,
            "page": page,
            "category_id": category_id,
            "brand_id": brand_id,
            "stock": 1 if in_stock else None,
        }
        return self._request("GET", PRODUCTS_PATH, params=params, decode=ProductPage.from_api)

    # ---------- clients ----------
    def fetch_clients(self) -> Result:
        return self._request("GET", CLIENTS_PATH, decode=lambda data: decode_listing(data, "clients", Client))

    def create_client(self, client: Client) -> Result:
        return self._request("POST", CLIENTS_PATH, body=client.to_request(), decode=SubmitResult.from_api)

    # ---------- sales ----------
    def submit_sale(self, request_body: Dict[str, Any]) -> Result:
        return self._request("POST", CREATE_SALE_PATH, body=request_body, decode=SubmitResult.from_api)

    def list_sales(self, limit: Optional[int] = None, page: Optional[int] = None,
                   search: Optional[str] = None) -> Result:
        params = {"limit": limit, "page": page, "search": search}
        return self._request("GET", SALES_PATH, params=params,
                             decode=lambda data: decode_listing(data, "sales", RemoteSaleSummary))

    # ---------- drafts ----------
    def fetch_drafts(self, limit: Optional[int] = None, page: Optional[int] = None) -> Result:
        params = {"limit": limit, "page": page}
        return self._request("GET", DRAFTS_PATH, params=params,
                             decode=lambda data: decode_listing(data, "drafts", RemoteDraftSummary))

    def submit_draft(self, request_body: Dict[str, Any]) -> Result:
        return self._request("POST", DRAFTS_PATH, body=request_body, decode=SubmitResult.from_api)

    def delete_draft(self, draft_id: int) -> Result:
        return self._request("DELETE", DRAFTS_PATH, params={"id": draft_id}, decode=SubmitResult.from_api)
