"""Sales refunds blueprint - store-scoped."""
from flask import Blueprint, request, jsonify, current_app, g

from pos_pricing.database import get_session
from pos_pricing.exceptions import BusinessLogicError
from pos_pricing.middleware import require_store
from pos_pricing.services.refund_service import (
    compute_full_refund, compute_refund, refund_state, remaining_quantities, submit_refund,
    utcnow, window_from_config
)
from pos_pricing.services.sales_service import get_sale, ledger_of, sale_to_dict, to_persisted_sale

refunds_bp = Blueprint('refunds', __name__, url_prefix='/sales')


def _requested_quantities(payload: dict):
    """None for a full refund, else {item_name: units}."""
    if payload.get('full'):
        return None
    items = payload.get('items')
    if not isinstance(items, dict) or not items:
        raise BusinessLogicError('items must map item names to quantities, or set full=true')
    requested = {}
    for name, qty in items.items():
        try:
            requested[str(name)] = int(qty)
        except (TypeError, ValueError):
            raise BusinessLogicError(f'Quantity for {name} must be an integer')
    return requested


@refunds_bp.route('/<int:sale_id>', methods=['GET'])
@require_store
def sale_detail(sale_id):
    """Sale with its allocation breakdown, refund ledger and refund state."""
    sale = get_sale(get_session(), sale_id, g.store_id)
    order = to_persisted_sale(sale)
    ledger = ledger_of(sale)
    window = window_from_config(current_app.config)

    refundable = {}
    for line, left in zip(order.lines, remaining_quantities(order, ledger)):
        refundable[line.name] = refundable.get(line.name, 0) + left

    data = sale_to_dict(sale)
    data['refund_state'] = refund_state(order, ledger, utcnow(), window).value
    data['refundable_quantities'] = refundable
    data['refund_window_closes_at'] = (order.completed_at + window).isoformat()
    return jsonify({'status': 'ok', 'sale': data})


@refunds_bp.route('/<int:sale_id>/refunds/preview', methods=['POST'])
@require_store
def preview_refund(sale_id):
    """
    Quote a refund without recording it.

    Body: {items: {item_name: units}} or {full: true}
    """
    payload = request.get_json(silent=True) or {}
    requested = _requested_quantities(payload)
    sale = get_sale(get_session(), sale_id, g.store_id)
    order = to_persisted_sale(sale)
    ledger = ledger_of(sale)
    window = window_from_config(current_app.config)

    if requested is None:
        quote = compute_full_refund(order, ledger, utcnow(), window)
    else:
        quote = compute_refund(order, ledger, requested, utcnow(), window)
    return jsonify({'status': 'ok', 'quote': quote.to_dict()})


@refunds_bp.route('/<int:sale_id>/refunds', methods=['POST'])
@require_store
def create_refund(sale_id):
    """
    Record a refund.

    Body: {items: {item_name: units}} or {full: true}, reason?
    """
    payload = request.get_json(silent=True) or {}
    requested = _requested_quantities(payload)
    refund, quote = submit_refund(
        get_session(), sale_id, g.store_id, requested,
        now=utcnow(),
        window=window_from_config(current_app.config),
        reason=payload.get('reason'),
    )
    current_app.logger.info(f"Refund #{refund.id} on sale #{sale_id}: {quote.amount}")
    return jsonify({'status': 'ok', 'refund_id': refund.id, 'quote': quote.to_dict()}), 201
