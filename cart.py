"""
Cart Engine: the in-memory cart, stock-bounded line quantities, totals and checkout.

Every mutation re-reads the product's available quantity from the local store
and keeps each line in (0, available]. Mutations never raise; they return one
of ``Applied``, ``Removed``, ``Capped`` or ``Rejected``.
"""
import logging
import sqlite3
import threading
from collections import OrderedDict
from contextlib import closing
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pos_store as store
from pos_config import ConfigStore
from pos_errors import StorageError, ValidationError
from pos_models import CartLine, Draft, Payment, Product, Sale, SaleLine

logger = logging.getLogger(__name__)


# ---------- mutation results ----------
@dataclass
class Applied:
    line: CartLine


@dataclass
class Removed:
    product_id: int


@dataclass
class Capped:
    """Requested quantity exceeded stock; the line holds the available quantity instead."""
    line: CartLine
    requested: float


@dataclass
class Rejected:
    product_id: int
    reason: str


# ---------- scan results ----------
@dataclass
class Found:
    product: Product


@dataclass
class NotFound:
    code: str


@dataclass
class ScanFailed:
    reason: str


def lookup_barcode(db_path: str, raw: Optional[str]):
    """Resolve a raw scanner string against product code, then barcode."""
    code = (raw or "").strip()
    if not code:
        return ScanFailed("empty barcode")
    try:
        with closing(store.connect(db_path)) as conn:
            product = store.get_product_by_code(conn, code)
    except sqlite3.Error as exc:
        logger.warning("Barcode lookup for %r failed: %s", code, exc)
        return ScanFailed(str(exc))
    return Found(product) if product else NotFound(code)


@dataclass
class CartTotals:
    subtotal: float = 0.0
    tax: float = 0.0
    discount: float = 0.0
    shipping: float = 0.0
    total: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "subtotal": round(self.subtotal, 2),
            "tax": round(self.tax, 2),
            "discount": round(self.discount, 2),
            "shipping": round(self.shipping, 2),
            "total": round(self.total, 2),
        }


class Cart:
    def __init__(self, db_path: Optional[str] = None, config: Optional[ConfigStore] = None, scheduler=None):
        self.db_path = db_path
        self.config = config
        self.scheduler = scheduler
        self._lines: "OrderedDict[int, CartLine]" = OrderedDict()
        self._lock = threading.RLock()
        self.tax = 0.0
        self.discount = 0.0
        self.shipping = 0.0
        self.client_id: Optional[int] = config.default_client() if config else None
        self.warehouse_id: Optional[int] = config.default_warehouse() if config else None
        self.totals = CartTotals()

    # ---- reads ----
    @property
    def lines(self) -> List[CartLine]:
        with self._lock:
            return list(self._lines.values())

    def line_for(self, product_id: int) -> Optional[CartLine]:
        with self._lock:
            return self._lines.get(product_id)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._lines

    def _live_product(self, product: Product) -> Product:
        """Current stock from the store; the passed snapshot when the store has no row."""
        if not self.db_path:
            return product
        try:
            with closing(store.connect(self.db_path)) as conn:
                live = store.get_product(conn, product.id)
        except sqlite3.Error as exc:
            logger.warning("Stock read for product %s failed, using snapshot: %s", product.id, exc)
            return product
        return live or product

    def _recalculate(self):
        subtotal = sum(line.subtotal for line in self._lines.values())
        total = max(0.0, subtotal + self.tax + self.shipping - self.discount)
        self.totals = CartTotals(subtotal, self.tax, self.discount, self.shipping, total)

    # ---- mutations ----
    def add_to_cart(self, product: Product, quantity: float = 1.0):
        if quantity <= 0:
            return Rejected(product.id, "quantity must be positive")
        live = self._live_product(product)
        available = live.qte_available_for_sale
        with self._lock:
            existing = self._lines.get(live.id)
            requested = (existing.quantity if existing else 0.0) + quantity
            if available <= 0:
                if existing is None:
                    return Rejected(live.id, "out of stock")
                del self._lines[live.id]
                self._recalculate()
                return Removed(live.id)
            if existing is None:
                line = CartLine(product=live, quantity=min(requested, available), unit_price=live.price)
                self._lines[live.id] = line
            else:
                existing.product = live
                existing.quantity = min(requested, available)
                line = existing
            self._recalculate()
            if requested > available:
                logger.info("Capped product %s at %g (requested %g)", live.id, available, requested)
                return Capped(line, requested)
            return Applied(line)

    def update_quantity(self, product_id: int, new_quantity: float):
        with self._lock:
            line = self._lines.get(product_id)
            if line is None:
                return Rejected(product_id, "not in cart")
            if new_quantity <= 0:
                del self._lines[product_id]
                self._recalculate()
                return Removed(product_id)
            product = line.product
        live = self._live_product(product)
        available = live.qte_available_for_sale
        with self._lock:
            line = self._lines.get(product_id)
            if line is None:
                return Rejected(product_id, "not in cart")
            if available <= 0:
                del self._lines[product_id]
                self._recalculate()
                return Removed(product_id)
            line.product = live
            line.quantity = min(new_quantity, available)
            self._recalculate()
            if new_quantity > available:
                return Capped(line, new_quantity)
            return Applied(line)

    def remove_from_cart(self, product_id: int):
        with self._lock:
            if self._lines.pop(product_id, None) is None:
                return Rejected(product_id, "not in cart")
            self._recalculate()
            return Removed(product_id)

    def clear_cart(self):
        with self._lock:
            self._lines.clear()
            self._recalculate()

    def set_tax(self, amount: float):
        with self._lock:
            self.tax = max(0.0, float(amount))
            self._recalculate()

    def set_discount(self, amount: float):
        with self._lock:
            self.discount = max(0.0, float(amount))
            self._recalculate()

    def set_shipping(self, amount: float):
        with self._lock:
            self.shipping = max(0.0, float(amount))
            self._recalculate()

    def set_client(self, client_id: Optional[int]):
        with self._lock:
            self.client_id = client_id if client_id and client_id > 0 else None

    def set_warehouse(self, warehouse_id: Optional[int]):
        with self._lock:
            self.warehouse_id = warehouse_id if warehouse_id and warehouse_id > 0 else None

    # ---- checkout ----
    def _precondition_problems(self) -> List[str]:
        problems = []
        if not self._lines:
            problems.append("cart empty")
        if not self.client_id:
            problems.append("no client selected")
        if not self.warehouse_id:
            problems.append("no warehouse selected")
        return problems

    def _sale_lines(self) -> List[SaleLine]:
        return [
            SaleLine(
                product_id=line.product.id,
                product_variant_id=line.product.product_variant_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                subtotal=line.subtotal,
                product_name_snapshot=line.product.name,
            )
            for line in self._lines.values()
        ]

    def _tax_rate(self) -> float:
        subtotal = self.totals.subtotal
        return (self.tax / subtotal) * 100.0 if subtotal > 0 else 0.0

    def checkout(
        self,
        payment_method_id: Optional[int],
        payment_amount: float,
        notes: Optional[str] = None,
        po_number: Optional[str] = None,
        account_id: Optional[int] = None,
        payment_note: Optional[str] = None,
    ) -> Sale:
        """Commit the cart as a local sale and clear it.

        Raises ValidationError listing every failed precondition, or
        StorageError if the local write fails (the cart is left intact).
        """
        if not self.db_path:
            raise StorageError("no local store configured")
        if not payment_method_id and self.config is not None:
            payment_method_id = self.config.default_payment_method()
        with self._lock:
            problems = self._precondition_problems()
            if payment_amount is None or payment_amount <= 0:
                problems.append("payment amount must be positive")
            if not payment_method_id:
                problems.append("no payment method selected")
            if problems:
                raise ValidationError(*problems)

            total = self.totals.total
            sale = Sale(
                client_id=self.client_id,
                warehouse_id=self.warehouse_id,
                tax_rate=round(self._tax_rate(), 4),
                tax_net=self.tax,
                discount=self.discount,
                shipping=self.shipping,
                grand_total=total,
                notes=notes,
                po_number=po_number,
                account_id=account_id,
                payment_note=payment_note,
            )
            lines = self._sale_lines()
            payment = Payment(
                payment_method_id=payment_method_id,
                amount=float(payment_amount),
                change=max(0.0, float(payment_amount) - total),
            )
            try:
                with closing(store.connect(self.db_path)) as conn:
                    store.commit_sale(conn, sale, lines, [payment])
            except sqlite3.Error as exc:
                logger.exception("Checkout could not be stored")
                raise StorageError(str(exc)) from exc
            logger.info("Sale %s committed locally: %s lines, total %.2f", sale.local_id, len(lines), total)
            self._lines.clear()
            self.tax = self.discount = self.shipping = 0.0
            self._recalculate()

        if self.scheduler is not None:
            self.scheduler.trigger_sale_upload()
            self.scheduler.trigger_product_sync()
        return sale

    def save_as_draft(self, notes: Optional[str] = None) -> Draft:
        """Store the cart as a draft (no payment) and clear it."""
        if not self.db_path:
            raise StorageError("no local store configured")
        with self._lock:
            problems = self._precondition_problems()
            if problems:
                raise ValidationError(*problems)
            draft = Draft(
                client_id=self.client_id,
                warehouse_id=self.warehouse_id,
                tax_rate=round(self._tax_rate(), 4),
                tax_net=self.tax,
                discount=self.discount,
                shipping=self.shipping,
                grand_total=self.totals.total,
                notes=notes,
            )
            lines = self._sale_lines()
            try:
                with closing(store.connect(self.db_path)) as conn:
                    store.save_draft(conn, draft, lines)
            except sqlite3.Error as exc:
                logger.exception("Draft could not be stored")
                raise StorageError(str(exc)) from exc
            self._lines.clear()
            self.tax = self.discount = self.shipping = 0.0
            self._recalculate()
        if self.scheduler is not None:
            self.scheduler.trigger_sale_upload()
        return draft

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "lines": [line.to_dict() for line in self._lines.values()],
                "client_id": self.client_id,
                "warehouse_id": self.warehouse_id,
                "totals": self.totals.to_dict(),
            }


def describe_change(result) -> Dict[str, Any]:
    """JSON-friendly view of a mutation result."""
    if isinstance(result, Applied):
        return {"result": "applied", "line": result.line.to_dict()}
    if isinstance(result, Capped):
        return {"result": "capped", "line": result.line.to_dict(), "requested": result.requested}
    if isinstance(result, Removed):
        return {"result": "removed", "product_id": result.product_id}
    return {"result": "rejected", "product_id": result.product_id, "reason": result.reason}
