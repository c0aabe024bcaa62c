"""JSON API over the persistence gateway for the till and the back-office screens."""
import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

import settings
from backends import RecordNotFound, RemoteStoreError, StockValidationError
from gateway import PersistenceGateway, open_gateway
from stock_engine import ConversionInfo
from sync_worker import SyncWorker


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise StockValidationError('Invalid JSON payload')
    return data


def _store_id() -> str:
    store_id = (request.args.get('store_id') or '').strip()
    if not store_id:
        raise StockValidationError('store_id is required')
    return store_id


def _number(data: Dict[str, Any], key: str, default: Optional[float] = None) -> Optional[float]:
    value = data.get(key, default)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise StockValidationError(f"{key} must be a number") from None


def create_app(gateway: Optional[PersistenceGateway] = None,
               worker: Optional[SyncWorker] = None) -> Flask:
    app = Flask(__name__)
    app.logger.setLevel(settings.LOG_LEVEL)
    logging.getLogger('werkzeug').setLevel(settings.LOG_LEVEL)

    gw = gateway or open_gateway()
    app.config['GATEWAY'] = gw
    app.config['SYNC_WORKER'] = worker

    @app.errorhandler(RecordNotFound)
    def _not_found(exc):
        return jsonify({'status': 'error', 'message': str(exc)}), 404

    @app.errorhandler(StockValidationError)
    def _invalid(exc):
        return jsonify({'status': 'error', 'message': str(exc)}), 400

    @app.errorhandler(RemoteStoreError)
    def _remote_down(exc):
        app.logger.warning("Remote store unavailable: %s", exc)
        return jsonify({'status': 'error', 'message': f'Remote store unavailable: {exc}'}), 503

    @app.route('/api/health')
    def health():
        return jsonify({
            'status': 'success',
            'online': gw.remote_available(),
            'queued': gw.get_sync_queue_count(),
        })

    # ---------- inventory ----------
    @app.route('/api/items')
    def list_items():
        return jsonify({'status': 'success', 'items': gw.fetch_inventory(_store_id())})

    @app.route('/api/items', methods=['POST'])
    def add_item():
        item_id = gw.add_inventory_item(_json_body())
        return jsonify({'status': 'success', 'id': item_id}), 201

    @app.route('/api/items/low-stock')
    def low_stock():
        return jsonify({'status': 'success', 'items': gw.low_stock_items(_store_id())})

    @app.route('/api/items/<item_id>')
    def get_item(item_id):
        item = gw.get_item(item_id)
        if item is None:
            raise RecordNotFound('inventory_items', item_id)
        return jsonify({'status': 'success', 'item': item})

    @app.route('/api/items/<item_id>/stock', methods=['POST'])
    def update_stock(item_id):
        data = _json_body()
        gw.update_stock_level(item_id, _number(data, 'new_stock'))
        return jsonify({'status': 'success'})

    @app.route('/api/items/<item_id>/batches')
    def list_batches(item_id):
        batches = gw.fetch_batches(item_id, as_of=request.args.get('as_of'))
        return jsonify({'status': 'success', 'batches': batches})

    @app.route('/api/items/<item_id>/batches', methods=['POST'])
    def receive_batch(item_id):
        data = _json_body()
        batch_id = gw.receive_batch(
            item_id,
            _number(data, 'quantity'),
            expiry_date=data.get('expiry_date'),
            batch_number=data.get('batch_number'),
            notes=data.get('notes'),
        )
        return jsonify({'status': 'success', 'id': batch_id}), 201

    @app.route('/api/items/<item_id>/breakout')
    def list_breakout(item_id):
        return jsonify({'status': 'success', 'items': gw.get_breakout_items(item_id)})

    @app.route('/api/items/<item_id>/breakout', methods=['POST'])
    def create_breakout(item_id):
        data = _json_body()
        conversion = ConversionInfo(
            breakout_unit_name=data.get('breakout_unit_name') or '',
            conversion_rate=_number(data, 'conversion_rate', 0),
            bulk_unit_name=data.get('bulk_unit_name'),
        )
        new_id = gw.create_breakout_unit_item(item_id, conversion, bulk_batch_id=data.get('bulk_batch_id'))
        return jsonify({'status': 'success', 'id': new_id}), 201

    @app.route('/api/items/<item_id>/deduct-breakout', methods=['POST'])
    def deduct_breakout(item_id):
        data = _json_body()
        ok = gw.deduct_breakout_units(item_id, _number(data, 'quantity'), data.get('batch_id'))
        if not ok:
            return jsonify({'status': 'error', 'message': 'Breakout deduction refused'}), 409
        return jsonify({'status': 'success'})

    @app.route('/api/items/<item_id>/audit')
    def audit(item_id):
        physical = request.args.get('physical')
        if physical is None:
            raise StockValidationError('physical is required')
        report = gw.calculate_audit_variance(item_id, _number({'physical': physical}, 'physical'))
        return jsonify({'status': 'success', 'report': report.as_dict()})

    @app.route('/api/adjustments', methods=['POST'])
    def record_adjustment():
        adjustment_id = gw.record_stock_adjustment(_json_body())
        return jsonify({'status': 'success', 'id': adjustment_id}), 201

    @app.route('/api/batches/<batch_id>/dispose', methods=['POST'])
    def dispose_batch(batch_id):
        data = request.get_json(silent=True) or {}
        written_off = gw.dispose_batch(batch_id, data.get('reason') or '')
        return jsonify({'status': 'success', 'written_off': written_off})

    # ---------- sales ----------
    @app.route('/api/sales')
    def list_sales():
        limit = request.args.get('limit', default=100, type=int)
        return jsonify({'status': 'success', 'sales': gw.fetch_recent_sales(_store_id(), limit=limit)})

    @app.route('/api/sales', methods=['POST'])
    def record_sale():
        sale_id = gw.record_sale(_json_body())
        return jsonify({'status': 'success', 'id': sale_id, 'queued': gw.get_sync_queue_count()}), 201

    @app.route('/api/sales/<sale_id>/void', methods=['POST'])
    def void_sale(sale_id):
        return jsonify({'status': 'success', 'voided': bool(gw.void_sale(sale_id))})

    @app.route('/api/sales/<sale_id>/settle', methods=['POST'])
    def settle_debt(sale_id):
        gw.settle_debt(sale_id)
        return jsonify({'status': 'success'})

    @app.route('/api/debtors')
    def debtors():
        return jsonify({'status': 'success', 'sales': gw.fetch_debtors(_store_id())})

    # ---------- people & money ----------
    @app.route('/api/customers')
    def list_customers():
        return jsonify({'status': 'success', 'customers': gw.fetch_customers(_store_id())})

    @app.route('/api/customers', methods=['POST'])
    def create_customer():
        return jsonify({'status': 'success', 'id': gw.create_customer(_json_body())}), 201

    @app.route('/api/customers/<customer_id>', methods=['PATCH'])
    def update_customer(customer_id):
        gw.update_customer(customer_id, _json_body())
        return jsonify({'status': 'success'})

    @app.route('/api/suppliers')
    def list_suppliers():
        return jsonify({'status': 'success', 'suppliers': gw.fetch_suppliers(_store_id())})

    @app.route('/api/suppliers', methods=['POST'])
    def create_supplier():
        return jsonify({'status': 'success', 'id': gw.create_supplier(_json_body())}), 201

    @app.route('/api/invoices', methods=['POST'])
    def create_invoice():
        return jsonify({'status': 'success', 'id': gw.create_supplier_invoice(_json_body())}), 201

    @app.route('/api/invoices/<invoice_id>/pay', methods=['POST'])
    def pay_invoice(invoice_id):
        gw.pay_supplier_invoice(invoice_id)
        return jsonify({'status': 'success'})

    @app.route('/api/agents')
    def list_agents():
        return jsonify({'status': 'success', 'agents': gw.fetch_agents(_store_id())})

    @app.route('/api/agents', methods=['POST'])
    def add_agent():
        data = _json_body()
        agent_id = gw.add_agent(data.get('store_id') or '', data.get('name') or '', data.get('phone'))
        return jsonify({'status': 'success', 'id': agent_id}), 201

    @app.route('/api/agents/<agent_id>', methods=['DELETE'])
    def delete_agent(agent_id):
        gw.delete_agent(agent_id)
        return jsonify({'status': 'success'})

    @app.route('/api/expenses', methods=['POST'])
    def record_expense():
        return jsonify({'status': 'success', 'id': gw.record_expense(_json_body())}), 201

    @app.route('/api/audit-logs')
    def audit_logs():
        return jsonify({'status': 'success', 'logs': gw.fetch_audit_logs(_store_id())})

    # ---------- sync ----------
    @app.route('/api/sync/count')
    def sync_count():
        return jsonify({'status': 'success', 'count': gw.get_sync_queue_count()})

    @app.route('/api/sync/drain', methods=['POST'])
    def sync_drain():
        result = gw.process_sync_queue()
        return jsonify({'status': 'success', 'result': result.as_dict(), 'remaining': gw.get_sync_queue_count()})

    @app.route('/api/sync/online', methods=['POST'])
    def sync_online():
        if worker is not None:
            worker.notify_online()
        return jsonify({'status': 'success'})

    @app.route('/api/sync/failures')
    def sync_failures():
        limit = request.args.get('limit', default=100, type=int)
        return jsonify({'status': 'success', 'failures': gw.sync_failures(limit)})

    @app.route('/api/sync/failures', methods=['DELETE'])
    def clear_sync_failures():
        return jsonify({'status': 'success', 'cleared': gw.queue.clear_failures()})

    @app.route('/api/sync/failures/<int:failure_id>/requeue', methods=['POST'])
    def requeue_failure(failure_id):
        entry_id = gw.queue.requeue_failure(failure_id)
        if entry_id is None:
            return jsonify({'status': 'error', 'message': 'Failure not found'}), 404
        return jsonify({'status': 'success', 'entry_id': entry_id})

    return app
