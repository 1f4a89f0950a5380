"""Typed records for the POS client and tolerant decoders for API payloads."""
import calendar
import datetime as dt
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pos_errors import DecodeError

PRODUCT_TYPES = ("single", "combo", "service")
LOW_STOCK_THRESHOLD = 10.0


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(ms: Optional[int]) -> Optional[str]:
    if not ms:
        return None
    stamp = dt.datetime.fromtimestamp(ms / 1000.0, tz=dt.timezone.utc)
    return stamp.replace(microsecond=0, tzinfo=None).isoformat() + "Z"


# ---------- TOLERANT DECODERS ----------
def as_int(value: Any, default: int = 0) -> int:
    """Empty string, null, 'null' and junk all decode to ``default``."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text or text.lower() == "null":
            return default
        try:
            return int(text)
        except ValueError:
            try:
                return int(float(text))
            except ValueError:
                return default
    return default


def as_float(value: Any, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text or text.lower() == "null":
            return default
        value = text
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def as_opt_int(value: Any) -> Optional[int]:
    number = as_int(value, 0)
    return number if number > 0 else None


def as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip()


def as_opt_str(value: Any) -> Optional[str]:
    text = as_str(value)
    return text or None


def _require_dict(payload: Any, what: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise DecodeError(f"{what} must be an object, got {type(payload).__name__}")
    return payload


def _list_of(payload: Dict[str, Any], key: str, required: bool = False) -> List[Any]:
    value = payload.get(key)
    if value is None:
        if required:
            raise DecodeError(f"missing '{key}'")
        return []
    if not isinstance(value, list):
        raise DecodeError(f"'{key}' must be a list")
    return value


def normalize_product_type(raw: Any) -> str:
    text = as_str(raw).lower()
    if text.startswith("is_"):
        text = text[3:]
    return text if text in PRODUCT_TYPES else "single"


# ---------- CATALOG ----------
@dataclass
class Product:
    id: int
    code: str
    name: str
    qte_on_hand: float = 0.0
    qte_available_for_sale: float = 0.0
    unit_of_sale: str = ""
    type: str = "single"
    price: float = 0.0
    barcode: Optional[str] = None
    cost_price: Optional[float] = None
    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    product_variant_id: Optional[int] = None
    image: Optional[str] = None
    updated_at: int = field(default_factory=now_ms)
    synced: bool = True

    def __post_init__(self):
        if self.qte_available_for_sale < 0:
            self.qte_available_for_sale = 0.0

    @property
    def in_stock(self) -> bool:
        return self.qte_available_for_sale > 0

    @classmethod
    def from_api(cls, data: Any) -> "Product":
        row = _require_dict(data, "product")
        product_id = as_int(row.get("id"))
        if product_id <= 0:
            raise DecodeError(f"product without a valid id: {row.get('id')!r}")
        cost = row.get("cost") if "cost" in row else row.get("cost_price")
        return cls(
            id=product_id,
            code=as_str(row.get("code")),
            name=as_str(row.get("name")),
            barcode=as_opt_str(row.get("barcode")),
            image=as_opt_str(row.get("image")),
            qte_on_hand=as_float(row.get("qte")),
            qte_available_for_sale=max(0.0, as_float(row.get("qte_sale"))),
            unit_of_sale=as_str(row.get("unitSale")),
            type=normalize_product_type(row.get("product_type")),
            price=as_float(row.get("Net_price")),
            cost_price=as_float(cost) if cost not in (None, "") else None,
            category_id=as_opt_int(row.get("category_id")),
            brand_id=as_opt_int(row.get("brand_id")),
            product_variant_id=as_opt_int(row.get("product_variant_id")),
        )


def stock_status_message(product: Product) -> str:
    qty = int(product.qte_available_for_sale)
    if product.qte_available_for_sale <= 0:
        return "Out of Stock"
    if is_low_stock(product):
        return f"Low Stock ({qty} remaining)"
    return f"In Stock ({qty} available)"


def is_low_stock(product: Product, threshold: float = LOW_STOCK_THRESHOLD) -> bool:
    return product.qte_available_for_sale < threshold


@dataclass
class ProductPage:
    products: List[Product]
    total_rows: int = 0

    @classmethod
    def from_api(cls, data: Any) -> "ProductPage":
        body = _require_dict(data, "product page")
        rows = _list_of(body, "products", required=True)
        return cls(products=[Product.from_api(r) for r in rows], total_rows=as_int(body.get("totalRows")))


@dataclass
class NamedRef:
    """Client/warehouse-like lookup row: id + name (+ default marker)."""
    id: int
    name: str
    is_default: bool = False

    @classmethod
    def from_api(cls, data: Any) -> "NamedRef":
        row = _require_dict(data, "record")
        return cls(id=as_int(row.get("id")), name=as_str(row.get("name") or row.get("account_name")))


@dataclass
class Client:
    id: int
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    tax_number: Optional[str] = None
    is_default: bool = False

    @classmethod
    def from_api(cls, data: Any) -> "Client":
        row = _require_dict(data, "client")
        return cls(
            id=as_int(row.get("id")),
            name=as_str(row.get("name")),
            phone=as_opt_str(row.get("phone")),
            email=as_opt_str(row.get("email")),
            address=as_opt_str(row.get("adresse") or row.get("address")),
            country=as_opt_str(row.get("country")),
            city=as_opt_str(row.get("city")),
            tax_number=as_opt_str(row.get("tax_number")),
        )

    def to_request(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"name": self.name}
        for key, value in (("phone", self.phone), ("email", self.email), ("adresse", self.address),
                           ("country", self.country), ("city", self.city), ("tax_number", self.tax_number)):
            if value:
                body[key] = value
        return body


@dataclass
class Warehouse:
    id: int
    name: str
    is_default: bool = False


@dataclass
class Bootstrap:
    default_warehouse_id: int
    default_client_id: int
    default_client_name: str = ""
    clients: List[Client] = field(default_factory=list)
    warehouses: List[Warehouse] = field(default_factory=list)
    payment_methods: List[NamedRef] = field(default_factory=list)
    categories: List[NamedRef] = field(default_factory=list)
    brands: List[NamedRef] = field(default_factory=list)
    accounts: List[NamedRef] = field(default_factory=list)
    products_per_page: int = 28

    @classmethod
    def from_api(cls, data: Any) -> "Bootstrap":
        body = _require_dict(data, "bootstrap")
        warehouses = []
        for row in _list_of(body, "warehouses"):
            ref = NamedRef.from_api(row)
            warehouses.append(Warehouse(id=ref.id, name=ref.name))
        per_page = as_int(body.get("products_per_page"), 28)
        return cls(
            default_warehouse_id=as_int(body.get("defaultWarehouse")),
            default_client_id=as_int(body.get("defaultClient")),
            default_client_name=as_str(body.get("default_client_name")),
            clients=[Client.from_api(r) for r in _list_of(body, "clients")],
            warehouses=warehouses,
            payment_methods=[NamedRef.from_api(r) for r in _list_of(body, "payment_methods")],
            categories=[NamedRef.from_api(r) for r in _list_of(body, "categories")],
            brands=[NamedRef.from_api(r) for r in _list_of(body, "brands")],
            accounts=[NamedRef.from_api(r) for r in _list_of(body, "accounts")],
            products_per_page=per_page if per_page > 0 else 28,
        )


# ---------- CART ----------
@dataclass
class CartLine:
    product: Product
    quantity: float
    unit_price: float

    @property
    def subtotal(self) -> float:
        return self.quantity * self.unit_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product.id,
            "name": self.product.name,
            "code": self.product.code,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "subtotal": self.subtotal,
            "available": self.product.qte_available_for_sale,
        }


# ---------- SALES ----------
@dataclass
class SaleLine:
    product_id: int
    quantity: float
    unit_price: float
    subtotal: float
    product_name_snapshot: str
    product_variant_id: Optional[int] = None
    sale_unit_id: Optional[int] = None
    tax_percent: float = 0.0
    tax_method: str = "1"
    discount: float = 0.0
    discount_method: str = "2"
    imei_number: Optional[str] = None
    id: Optional[int] = None
    sale_local_id: Optional[int] = None

    def to_request(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "product_variant_id": self.product_variant_id,
            "sale_unit_id": self.sale_unit_id,
            "quantity": self.quantity,
            "Unit_price": self.unit_price,
            "subtotal": self.subtotal,
            "tax_percent": self.tax_percent,
            "tax_method": self.tax_method,
            "discount": self.discount,
            "discount_Method": self.discount_method,
            "imei_number": self.imei_number,
            "name": self.product_name_snapshot,
        }


@dataclass
class Payment:
    payment_method_id: int
    amount: float
    change: float = 0.0
    id: Optional[int] = None
    sale_local_id: Optional[int] = None

    def to_request(self) -> Dict[str, Any]:
        return {"payment_method_id": self.payment_method_id, "amount": self.amount}


@dataclass
class Sale:
    client_id: int
    warehouse_id: int
    grand_total: float
    tax_rate: float = 0.0
    tax_net: float = 0.0
    discount: float = 0.0
    shipping: float = 0.0
    notes: Optional[str] = None
    po_number: Optional[str] = None
    account_id: Optional[int] = None
    payment_note: Optional[str] = None
    receipt_id: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    local_id: Optional[int] = None
    server_id: Optional[int] = None
    synced: bool = False

    def header_request(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "warehouse_id": self.warehouse_id,
            "tax_rate": self.tax_rate,
            "TaxNet": self.tax_net,
            "discount": self.discount,
            "shipping": self.shipping,
            "GrandTotal": self.grand_total,
            "notes": self.notes,
            "po_number": self.po_number,
            "account_id": self.account_id,
            "payment_note": self.payment_note,
            "receipt_id": self.receipt_id,
        }


def build_sale_request(sale: Sale, lines: List[SaleLine], payments: List[Payment]) -> Dict[str, Any]:
    body = sale.header_request()
    body["details"] = [line.to_request() for line in lines]
    body["payments"] = [p.to_request() for p in payments]
    return body


@dataclass
class Draft:
    client_id: int
    warehouse_id: int
    grand_total: float
    tax_rate: float = 0.0
    tax_net: float = 0.0
    discount: float = 0.0
    shipping: float = 0.0
    notes: Optional[str] = None
    receipt_id: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    local_id: Optional[int] = None
    server_id: Optional[int] = None
    synced: bool = False


def build_draft_request(draft: Draft, lines: List[SaleLine]) -> Dict[str, Any]:
    return {
        "client_id": draft.client_id,
        "warehouse_id": draft.warehouse_id,
        "tax_rate": draft.tax_rate,
        "TaxNet": draft.tax_net,
        "discount": draft.discount,
        "shipping": draft.shipping,
        "GrandTotal": draft.grand_total,
        "notes": draft.notes,
        "receipt_id": draft.receipt_id,
        "details": [line.to_request() for line in lines],
    }


@dataclass
class SubmitResult:
    success: bool
    server_id: Optional[int] = None

    @classmethod
    def from_api(cls, data: Any) -> "SubmitResult":
        body = _require_dict(data, "submit response")
        if "success" not in body:
            raise DecodeError("missing 'success'")
        success = body.get("success")
        if isinstance(success, str):
            success = success.strip().lower() in ("1", "true", "yes")
        return cls(success=bool(success), server_id=as_opt_int(body.get("id")))


@dataclass
class RemoteSaleSummary:
    id: int
    ref: str
    date: str
    client_name: str
    warehouse_name: str
    grand_total: float
    paid_amount: float
    payment_status: str

    @classmethod
    def from_api(cls, data: Any) -> "RemoteSaleSummary":
        row = _require_dict(data, "sale")
        return cls(
            id=as_int(row.get("id")),
            ref=as_str(row.get("Ref") or row.get("ref")),
            date=as_str(row.get("date")),
            client_name=as_str(row.get("client_name")),
            warehouse_name=as_str(row.get("warehouse_name")),
            grand_total=as_float(row.get("GrandTotal")),
            paid_amount=as_float(row.get("paid_amount")),
            payment_status=as_str(row.get("payment_status")),
        )


@dataclass
class RemoteDraftSummary:
    id: int
    ref: str
    date: str
    client_name: str
    grand_total: float

    @classmethod
    def from_api(cls, data: Any) -> "RemoteDraftSummary":
        row = _require_dict(data, "draft")
        return cls(
            id=as_int(row.get("id")),
            ref=as_str(row.get("Ref") or row.get("ref")),
            date=as_str(row.get("date")),
            client_name=as_str(row.get("client_name")),
            grand_total=as_float(row.get("GrandTotal")),
        )


def decode_listing(data: Any, key: str, row_type) -> List[Any]:
    """Listing endpoints answer either a bare list or ``{key: [...]}``."""
    if isinstance(data, list):
        rows = data
    else:
        rows = _list_of(_require_dict(data, key), key, required=True)
    return [row_type.from_api(r) for r in rows]


@dataclass
class SyncStatus:
    last_product_sync: int = 0
    last_sale_sync: int = 0
    last_draft_sync: int = 0
    product_sync_in_progress: bool = False
    sale_sync_in_progress: bool = False

    @property
    def sync_in_progress(self) -> bool:
        return self.product_sync_in_progress or self.sale_sync_in_progress

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_product_sync": iso_from_ms(self.last_product_sync),
            "last_sale_sync": iso_from_ms(self.last_sale_sync),
            "last_draft_sync": iso_from_ms(self.last_draft_sync),
            "product_sync_in_progress": self.product_sync_in_progress,
            "sale_sync_in_progress": self.sale_sync_in_progress,
            "sync_in_progress": self.sync_in_progress,
        }


# ---------- REPORT PERIODS ----------
REPORT_PERIODS = ("today", "week", "month")


def period_start_ms(period: str, now: Optional[dt.datetime] = None) -> int:
    """Local start of the report window: midnight today, 7 days back, or one month back."""
    now = now or dt.datetime.now()
    if period == "today":
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elif period == "week":
        start = now - dt.timedelta(days=7)
    elif period == "month":
        year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
        day = min(now.day, calendar.monthrange(year, month)[1])
        start = now.replace(year=year, month=month, day=day)
    else:
        raise ValueError(f"unknown report period {period!r}")
    return int(start.timestamp() * 1000)
