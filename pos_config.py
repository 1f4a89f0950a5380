"""
POS configuration: environment settings plus the persisted key-value store.

Environment (read once at import, after loading a .env file if present):
  POS_DB_PATH                  SQLite DB path (default: pos.db)
  POS_CONFIG_PATH              persisted settings file (default: pos_config.json)
  POS_API_BASE_URL             fallback API domain when none is stored
  POS_API_TOKEN                optional bearer token sent with API calls
  POS_HTTP_TIMEOUT             connect/read timeout in seconds (default: 15)
  POS_HTTP_RETRIES             transport retries on connection failure (default: 2)
  POS_PRODUCT_SYNC_INTERVAL    seconds between catalog syncs (default: 3600)
  POS_SALE_UPLOAD_INTERVAL     seconds between sale uploads (default: 300)
  POS_MAX_CONSECUTIVE_FAILURES catalog page failures before abort (default: 3)
  POS_MAX_PAGES                catalog page ceiling (default: 100)
  POS_PRODUCTS_PER_PAGE        override for the server-reported page size
  POS_LOG_LEVEL                logging level (default: INFO)
"""
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from pos_errors import ValidationError

load_dotenv()

logger = logging.getLogger(__name__)


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float) -> float:
    raw = _env_string(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = _env_string(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


DEFAULT_API_BASE_URL = "https://gmexperteng.com"
DEFAULT_PRODUCTS_PER_PAGE = 28

POS_DB_PATH = _env_string("POS_DB_PATH", "pos.db")
POS_CONFIG_PATH = _env_string("POS_CONFIG_PATH", "pos_config.json")
API_BASE_URL = _env_string("POS_API_BASE_URL", DEFAULT_API_BASE_URL)
API_TOKEN = _env_string("POS_API_TOKEN")
HTTP_TIMEOUT = _env_float("POS_HTTP_TIMEOUT", 15.0)
HTTP_RETRIES = _env_int("POS_HTTP_RETRIES", 2)
PRODUCT_SYNC_INTERVAL = _env_float("POS_PRODUCT_SYNC_INTERVAL", 3600.0)
SALE_UPLOAD_INTERVAL = _env_float("POS_SALE_UPLOAD_INTERVAL", 300.0)
MAX_CONSECUTIVE_FAILURES = _env_int("POS_MAX_CONSECUTIVE_FAILURES", 3)
MAX_PAGES = _env_int("POS_MAX_PAGES", 100)
PRODUCTS_PER_PAGE_OVERRIDE = _env_int("POS_PRODUCTS_PER_PAGE", None)
LOG_LEVEL_NAME = (_env_string("POS_LOG_LEVEL", "INFO") or "INFO").upper()

KEY_API_BASE_URL = "api_base_url"
KEY_DEFAULT_WAREHOUSE = "default_warehouse_id"
KEY_DEFAULT_CLIENT = "default_client_id"
KEY_DEFAULT_PAYMENT_METHOD = "default_payment_method_id"
KEY_PRODUCTS_PER_PAGE = "products_per_page"
KEY_LAST_PRODUCT_SYNC = "last_product_sync"
KEY_LAST_SALE_SYNC = "last_sale_sync"


def configure_logging(level_name: Optional[str] = None) -> None:
    level = getattr(logging, (level_name or LOG_LEVEL_NAME), logging.INFO)
    logging.basicConfig(level=level, format="[pos] %(asctime)s %(levelname)s %(name)s %(message)s")
    logging.getLogger("werkzeug").setLevel(level)


def validate_base_url(url: Optional[str]) -> str:
    """Return the cleaned domain or raise ValidationError('invalid domain format')."""
    clean = (url or "").strip().rstrip("/")
    if not clean.startswith(("http://", "https://")):
        raise ValidationError("invalid domain format")
    parsed = urlparse(clean)
    if not parsed.hostname:
        raise ValidationError("invalid domain format")
    return clean


class ConfigStore:
    """Persisted key-value settings backed by a JSON file.

    Values are re-read from memory on every ``get`` so callers always see the
    latest write; writes replace the file atomically.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or POS_CONFIG_PATH)
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Config file %s unreadable (%s); starting empty", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _save_locked(self) -> None:
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        tmp.replace(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._save_locked()

    def update(self, values: Dict[str, Any]) -> None:
        with self._lock:
            self._data.update(values)
            self._save_locked()

    def remove(self, key: str) -> None:
        with self._lock:
            if key in self._data:
                del self._data[key]
                self._save_locked()

    def get_int(self, key: str) -> Optional[int]:
        value = self.get(key)
        if value in (None, ""):
            return None
        try:
            number = int(value)
        except (TypeError, ValueError):
            return None
        return number if number > 0 else None

    # ---- typed accessors ----
    def api_base_url(self) -> str:
        stored = self.get(KEY_API_BASE_URL)
        if isinstance(stored, str) and stored.strip():
            return stored.strip().rstrip("/")
        return (API_BASE_URL or DEFAULT_API_BASE_URL).rstrip("/")

    def save_api_base_url(self, url: str) -> str:
        clean = validate_base_url(url)
        self.set(KEY_API_BASE_URL, clean)
        logger.info("API domain set to %s", clean)
        return clean

    def clear_api_base_url(self) -> None:
        self.remove(KEY_API_BASE_URL)

    def default_warehouse(self) -> Optional[int]:
        return self.get_int(KEY_DEFAULT_WAREHOUSE)

    def default_client(self) -> Optional[int]:
        return self.get_int(KEY_DEFAULT_CLIENT)

    def default_payment_method(self) -> Optional[int]:
        return self.get_int(KEY_DEFAULT_PAYMENT_METHOD)

    def products_per_page(self) -> int:
        if PRODUCTS_PER_PAGE_OVERRIDE and PRODUCTS_PER_PAGE_OVERRIDE > 0:
            return PRODUCTS_PER_PAGE_OVERRIDE
        return self.get_int(KEY_PRODUCTS_PER_PAGE) or DEFAULT_PRODUCTS_PER_PAGE
