"""Local JSON API for the till UI: catalog, scan, cart, checkout, drafts, sync and settings."""
from flask import Flask, request, jsonify
import logging
import sqlite3
from contextlib import closing
from typing import Any, Dict, Optional

import pos_store as store
from cart import Capped, Cart, Found, NotFound, Rejected, describe_change, lookup_barcode
from catalog_sync import default_warehouse_or_error, setup_pos
from pos_config import LOG_LEVEL_NAME, POS_DB_PATH, ConfigStore
from pos_errors import (
    ErrorKind, PosError, StockExceeded, StorageError, ValidationError,
)
from pos_gateway import RemoteGateway
from pos_models import (
    REPORT_PERIODS, Client, as_float, as_int, as_opt_int, is_low_stock, period_start_ms, stock_status_message,
)
from receipts import receipt_for
from sync_worker import SyncScheduler, build_scheduler

_REMOTE_KINDS = (ErrorKind.CONNECTIVITY, ErrorKind.NETWORK, ErrorKind.SERVER, ErrorKind.DECODE,
                 ErrorKind.SYNC_ABORTED)


def _status_for(error: PosError) -> int:
    if error.kind == ErrorKind.VALIDATION:
        return 400
    if error.kind in (ErrorKind.STOCK_EXCEEDED, ErrorKind.CONFIGURATION):
        return 409
    if error.kind in _REMOTE_KINDS:
        return 502
    return 500


def _error(error: PosError):
    body = {'status': 'error'}
    body.update(error.to_dict())
    return jsonify(body), _status_for(error)


def _product_payload(p) -> Dict[str, Any]:
    return {
        'id': p.id,
        'code': p.code,
        'barcode': p.barcode,
        'name': p.name,
        'price': p.price,
        'unit': p.unit_of_sale,
        'type': p.type,
        'qte': p.qte_on_hand,
        'qte_sale': p.qte_available_for_sale,
        'category_id': p.category_id,
        'brand_id': p.brand_id,
        'image': p.image,
        'low_stock': is_low_stock(p),
        'stock_status': stock_status_message(p),
    }


def _change_response(result):
    body = {'status': 'success'}
    body.update(describe_change(result))
    if isinstance(result, Rejected):
        body['status'] = 'error'
        if result.reason == 'out of stock':
            return jsonify(body), 409
        if result.reason == 'not in cart':
            return jsonify(body), 404
        return jsonify(body), 400
    if isinstance(result, Capped):
        capped = StockExceeded(result.line.product.id, result.requested, result.line.quantity)
        body['kind'] = capped.kind.value
        body['message'] = capped.message
    return jsonify(body), 200


def create_app(
    db_path: Optional[str] = None,
    config: Optional[ConfigStore] = None,
    gateway: Optional[RemoteGateway] = None,
    scheduler: Optional[SyncScheduler] = None,
) -> Flask:
    db_path = db_path or POS_DB_PATH
    config = config or ConfigStore()
    gateway = gateway or RemoteGateway(config.api_base_url)
    scheduler = scheduler or build_scheduler(db_path, config, gateway)
    cart = Cart(db_path, config=config, scheduler=scheduler)

    app = Flask(__name__)
    app.logger.setLevel(getattr(logging, LOG_LEVEL_NAME, logging.INFO))
    app.extensions['pos'] = {
        'db_path': db_path, 'config': config, 'gateway': gateway, 'scheduler': scheduler, 'cart': cart,
    }

    def _db():
        return closing(store.connect(db_path))

    @app.errorhandler(PosError)
    def handle_pos_error(exc: PosError):
        if _status_for(exc) >= 500:
            app.logger.warning('Request failed: %s', exc.message)
        return _error(exc)

    @app.errorhandler(sqlite3.Error)
    def handle_db_error(exc: sqlite3.Error):
        app.logger.exception('Local store error')
        return _error(StorageError(str(exc)))

    @app.after_request
    def add_no_cache_headers(response):
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        return response

    @app.route('/api/health')
    def health():
        return jsonify({'status': 'success', 'api_base_url': config.api_base_url(),
                        'configured': bool(config.default_warehouse() and config.default_client())})

    # ---------- setup ----------
    @app.route('/api/setup', methods=['POST'])
    def api_setup():
        """Fetch bootstrap data, store defaults, and start loading the catalog."""
        result = setup_pos(gateway, db_path, config, scheduler)
        if not result.ok:
            return _error(result.error)
        boot = result.value.bootstrap
        cart.set_client(boot.default_client_id)
        cart.set_warehouse(boot.default_warehouse_id)
        return jsonify({
            'status': 'success',
            'default_warehouse_id': boot.default_warehouse_id,
            'default_client_id': boot.default_client_id,
            'products_per_page': config.products_per_page(),
            'first_page_count': result.value.first_page_count,
            'loading_more': result.value.loading_more,
        })

    # ---------- catalog ----------
    @app.route('/api/products')
    def api_products():
        """Query the local catalog: q, category_id, brand_id, in_stock=1"""
        args = request.args
        with _db() as conn:
            products = store.filter_products(
                conn,
                query=args.get('q'),
                category_id=as_opt_int(args.get('category_id')),
                brand_id=as_opt_int(args.get('brand_id')),
                in_stock=args.get('in_stock') in ('1', 'true', 'yes'),
            )
        return jsonify({'status': 'success', 'products': [_product_payload(p) for p in products]})

    @app.route('/api/scan/<path:code>')
    def api_scan(code):
        """Resolve a scanned barcode; add=1 also puts one unit in the cart."""
        found = lookup_barcode(db_path, code)
        if isinstance(found, NotFound):
            return jsonify({'status': 'not_found', 'code': found.code}), 404
        if not isinstance(found, Found):
            return jsonify({'status': 'error', 'message': found.reason}), 400
        body = {'status': 'success', 'product': _product_payload(found.product)}
        if request.args.get('add') in ('1', 'true', 'yes'):
            body['cart'] = describe_change(cart.add_to_cart(found.product, 1.0))
        return jsonify(body)

    # ---------- cart ----------
    @app.route('/api/cart', methods=['GET'])
    def api_cart():
        return jsonify({'status': 'success', 'cart': cart.to_dict()})

    @app.route('/api/cart', methods=['POST'])
    def api_cart_add():
        data = request.get_json(silent=True) or {}
        product_id = as_int(data.get('product_id'))
        quantity = as_float(data.get('quantity'), 1.0)
        with _db() as conn:
            product = store.get_product(conn, product_id)
        if product is None:
            return jsonify({'status': 'error', 'message': f'Unknown product {product_id}'}), 404
        return _change_response(cart.add_to_cart(product, quantity))

    @app.route('/api/cart', methods=['DELETE'])
    def api_cart_clear():
        cart.clear_cart()
        return jsonify({'status': 'success', 'cart': cart.to_dict()})

    @app.route('/api/cart/<int:product_id>', methods=['PATCH'])
    def api_cart_update(product_id):
        data = request.get_json(silent=True) or {}
        if 'quantity' not in data:
            raise ValidationError('quantity is required')
        return _change_response(cart.update_quantity(product_id, as_float(data.get('quantity'))))

    @app.route('/api/cart/<int:product_id>', methods=['DELETE'])
    def api_cart_remove(product_id):
        return _change_response(cart.remove_from_cart(product_id))

    @app.route('/api/cart/adjustments', methods=['POST'])
    def api_cart_adjust():
        """Set tax, discount, shipping, client_id and/or warehouse_id on the cart."""
        data = request.get_json(silent=True) or {}
        if 'tax' in data:
            cart.set_tax(as_float(data['tax']))
        if 'discount' in data:
            cart.set_discount(as_float(data['discount']))
        if 'shipping' in data:
            cart.set_shipping(as_float(data['shipping']))
        if 'client_id' in data:
            cart.set_client(as_opt_int(data['client_id']))
        if 'warehouse_id' in data:
            cart.set_warehouse(as_opt_int(data['warehouse_id']))
        return jsonify({'status': 'success', 'cart': cart.to_dict()})

    @app.route('/api/checkout', methods=['POST'])
    def api_checkout():
        data = request.get_json(silent=True) or {}
        sale = cart.checkout(
            payment_method_id=as_opt_int(data.get('payment_method_id')),
            payment_amount=as_float(data.get('amount')),
            notes=data.get('notes') or None,
            po_number=data.get('po_number') or None,
            account_id=as_opt_int(data.get('account_id')),
            payment_note=data.get('payment_note') or None,
        )
        with _db() as conn:
            payments = store.get_payments(conn, sale.local_id)
        return jsonify({
            'status': 'success',
            'local_id': sale.local_id,
            'receipt_id': sale.receipt_id,
            'grand_total': round(sale.grand_total, 2),
            'change': round(sum(p.change for p in payments), 2),
        }), 201

    # ---------- drafts ----------
    @app.route('/api/drafts', methods=['GET'])
    def api_drafts():
        with _db() as conn:
            drafts = store.list_drafts(conn)
            rows = [{
                'local_id': d.local_id,
                'receipt_id': d.receipt_id,
                'server_id': d.server_id,
                'client_id': d.client_id,
                'grand_total': d.grand_total,
                'lines': len(store.get_draft_lines(conn, d.local_id)),
                'synced': d.synced,
            } for d in drafts]
        return jsonify({'status': 'success', 'drafts': rows})

    @app.route('/api/drafts', methods=['POST'])
    def api_drafts_save():
        data = request.get_json(silent=True) or {}
        draft = cart.save_as_draft(notes=data.get('notes') or None)
        return jsonify({'status': 'success', 'local_id': draft.local_id, 'receipt_id': draft.receipt_id}), 201

    @app.route('/api/drafts/<int:local_id>', methods=['DELETE'])
    def api_drafts_delete(local_id):
        with _db() as conn:
            deleted = store.delete_draft(conn, local_id)
        if not deleted:
            return jsonify({'status': 'error', 'message': f'Draft {local_id} not found'}), 404
        return jsonify({'status': 'success'})

    @app.route('/api/drafts/remote', methods=['GET'])
    def api_drafts_remote():
        result = gateway.fetch_drafts(limit=as_opt_int(request.args.get('limit')),
                                      page=as_opt_int(request.args.get('page')))
        if not result.ok:
            return _error(result.error)
        return jsonify({'status': 'success', 'drafts': [vars(d) for d in result.value]})

    @app.route('/api/drafts/remote/<int:draft_id>', methods=['DELETE'])
    def api_drafts_remote_delete(draft_id):
        result = scheduler.uploader.delete_remote_draft(draft_id)
        if not result.ok:
            return _error(result.error)
        return jsonify({'status': 'success'})

    # ---------- clients ----------
    @app.route('/api/clients', methods=['GET'])
    def api_clients():
        with _db() as conn:
            clients = store.list_clients(conn)
        return jsonify({'status': 'success', 'clients': [vars(c) for c in clients]})

    @app.route('/api/clients', methods=['POST'])
    def api_clients_create():
        data = request.get_json(silent=True) or {}
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError('client name is required')
        client = Client(id=0, name=name, phone=data.get('phone'), email=data.get('email'),
                        address=data.get('address'), country=data.get('country'), city=data.get('city'),
                        tax_number=data.get('tax_number'))
        result = gateway.create_client(client)
        if not result.ok:
            return _error(result.error)
        if not result.value.success or not result.value.server_id:
            return jsonify({'status': 'error', 'message': 'Server did not create the client'}), 502
        client.id = result.value.server_id
        with _db() as conn:
            store.upsert_clients(conn, [client])
        return jsonify({'status': 'success', 'client': vars(client)}), 201

    @app.route('/api/lookups')
    def api_lookups():
        with _db() as conn:
            body = {
                'status': 'success',
                'warehouses': [vars(w) for w in store.list_warehouses(conn)],
                'payment_methods': [vars(m) for m in store.list_payment_methods(conn)],
                'categories': [vars(c) for c in store.list_categories(conn)],
                'brands': [vars(b) for b in store.list_brands(conn)],
            }
            default_client = store.get_default_client(conn)
            default_warehouse = store.get_default_warehouse(conn)
        body['default_client_id'] = default_client.id if default_client else config.default_client()
        body['default_warehouse_id'] = default_warehouse.id if default_warehouse else config.default_warehouse()
        body['default_payment_method_id'] = config.default_payment_method()
        return jsonify(body)

    # ---------- sales / reports ----------
    @app.route('/api/sales')
    def api_sales():
        """Local sales, newest first; period=today|week|month narrows the range."""
        period = request.args.get('period')
        since = 0
        if period:
            if period not in REPORT_PERIODS:
                raise ValidationError(f'period must be one of {", ".join(REPORT_PERIODS)}')
            since = period_start_ms(period)
        with _db() as conn:
            sales = store.list_sales(conn, since)
        return jsonify({'status': 'success', 'sales': [{
            'local_id': s.local_id,
            'receipt_id': s.receipt_id,
            'server_id': s.server_id,
            'client_id': s.client_id,
            'grand_total': s.grand_total,
            'created_at': s.created_at,
            'synced': s.synced,
        } for s in sales]})

    @app.route('/api/sales/<int:local_id>/receipt')
    def api_sale_receipt(local_id):
        with _db() as conn:
            text = receipt_for(conn, local_id, currency=request.args.get('currency'))
        if text is None:
            return jsonify({'status': 'error', 'message': f'Sale {local_id} not found'}), 404
        return jsonify({'status': 'success', 'receipt': text})

    @app.route('/api/sales/remote')
    def api_sales_remote():
        result = gateway.list_sales(limit=as_opt_int(request.args.get('limit')),
                                    page=as_opt_int(request.args.get('page')),
                                    search=request.args.get('search') or None)
        if not result.ok:
            return _error(result.error)
        return jsonify({'status': 'success', 'sales': [vars(s) for s in result.value]})

    @app.route('/api/reports/summary')
    def api_report_summary():
        period = (request.args.get('period') or 'today').lower()
        if period not in REPORT_PERIODS:
            raise ValidationError(f'period must be one of {", ".join(REPORT_PERIODS)}')
        with _db() as conn:
            summary = store.sales_summary(conn, period_start_ms(period))
        summary['period'] = period
        return jsonify({'status': 'success', 'summary': summary})

    # ---------- sync ----------
    @app.route('/api/sync/status')
    def api_sync_status():
        return jsonify({'status': 'success', 'sync': scheduler.status()})

    @app.route('/api/sync/products', methods=['POST'])
    def api_sync_products():
        default_warehouse_or_error(config)
        started = scheduler.trigger_product_sync()
        return jsonify({'status': 'success', 'started': started, 'queued': not started}), 202

    @app.route('/api/sync/sales', methods=['POST'])
    def api_sync_sales():
        started = scheduler.trigger_sale_upload()
        return jsonify({'status': 'success', 'started': started, 'queued': not started}), 202

    @app.route('/api/sync/cancel', methods=['POST'])
    def api_sync_cancel():
        scheduler.cancel_all()
        return jsonify({'status': 'success'})

    # ---------- settings ----------
    @app.route('/api/settings/domain', methods=['GET'])
    def api_domain():
        return jsonify({'status': 'success', 'api_base_url': config.api_base_url()})

    @app.route('/api/settings/domain', methods=['PUT'])
    def api_domain_set():
        data = request.get_json(silent=True) or {}
        if data.get('reset'):
            config.clear_api_base_url()
        else:
            config.save_api_base_url(data.get('api_base_url') or data.get('url') or '')
        return jsonify({'status': 'success', 'api_base_url': config.api_base_url()})

    return app
