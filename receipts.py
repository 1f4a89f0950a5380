"""Plain-text receipts built from stored sales. Line names come from the sale's own snapshot."""
import datetime as dt
import sqlite3
from typing import List, Optional, Sequence

import pos_store as store
from pos_models import Payment, Sale, SaleLine

LINE_WIDTH = 32


def _format_amount_label(amount: object, currency: Optional[str] = None) -> str:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        if amount is None:
            return ""
        return str(amount)
    unit = (currency or "").strip()
    return f"{unit.upper()} {value:,.2f}" if unit else f"{value:,.2f}"


def _normalized_lines(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        source = value.splitlines()
    elif isinstance(value, (list, tuple)):
        source = value
    else:
        source = [value]
    return [str(entry).strip() for entry in source if str(entry).strip()]


def _pair(left: str, right: str, width: int = LINE_WIDTH) -> str:
    space = width - len(right) - 1
    if len(left) > space:
        left = left[:max(space, 1)]
    return left.ljust(width - len(right)) + right


def _center(text: str, width: int = LINE_WIDTH) -> str:
    return text[:width].center(width).rstrip()


def render_receipt(
    sale: Sale,
    lines: Sequence[SaleLine],
    payments: Sequence[Payment],
    currency: Optional[str] = None,
    header: Optional[Sequence[str]] = None,
    footer: Optional[Sequence[str]] = None,
) -> str:
    rule = "-" * LINE_WIDTH
    out: List[str] = [_center(h) for h in _normalized_lines(header)]
    stamp = dt.datetime.fromtimestamp(sale.created_at / 1000.0).strftime("%Y-%m-%d %H:%M")
    out.append(f"Receipt: {sale.receipt_id or sale.local_id}")
    out.append(f"Date: {stamp}")
    if sale.server_id:
        out.append(f"Ref: {sale.server_id}")
    out.append(rule)
    for line in lines:
        out.append(line.product_name_snapshot[:LINE_WIDTH])
        qty = f"{line.quantity:g} x {line.unit_price:,.2f}"
        out.append(_pair(f"  {qty}", _format_amount_label(line.subtotal)))
    out.append(rule)
    subtotal = sum(line.subtotal for line in lines)
    out.append(_pair("Subtotal", _format_amount_label(subtotal, currency)))
    if sale.tax_net:
        out.append(_pair("Tax", _format_amount_label(sale.tax_net, currency)))
    if sale.discount:
        out.append(_pair("Discount", "-" + _format_amount_label(sale.discount, currency)))
    if sale.shipping:
        out.append(_pair("Shipping", _format_amount_label(sale.shipping, currency)))
    out.append(_pair("TOTAL", _format_amount_label(sale.grand_total, currency)))
    for p in payments:
        out.append(_pair("Paid", _format_amount_label(p.amount, currency)))
        if p.change:
            out.append(_pair("Change", _format_amount_label(p.change, currency)))
    if sale.notes:
        out.append(rule)
        out.extend(_normalized_lines(sale.notes))
    footer_lines = _normalized_lines(footer)
    if footer_lines:
        out.append("")
        out.extend(_center(f) for f in footer_lines)
    return "\n".join(out) + "\n"


def receipt_for(conn: sqlite3.Connection, local_id: int, **kwargs) -> Optional[str]:
    sale = store.get_sale(conn, local_id)
    if sale is None:
        return None
    return render_receipt(sale, store.get_sale_lines(conn, local_id), store.get_payments(conn, local_id), **kwargs)
