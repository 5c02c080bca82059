"""Carts blueprint: live cart mutations, pricing and checkout - store-scoped."""
from flask import Blueprint, request, jsonify, current_app, g

from pos_pricing.database import get_session
from pos_pricing.exceptions import BusinessLogicError, NotFoundError
from pos_pricing.middleware import require_store
from pos_pricing.models import Addon, BundleGroupId, ItemKind
from pos_pricing.services.cart_service import (
    AddBundle, AddItem, ApplyDiscount, ClearCart, ProductRef, RemoveBundle, RemoveDiscount,
    RemoveItem, SetAddons, SetQuantity
)
from pos_pricing.services.discount_service import list_eligible_discounts
from pos_pricing.services.inventory_client import InventoryClient
from pos_pricing.services.promotion_catalog_service import find_discount, find_promotion, get_store_catalog
from pos_pricing.services.sales_service import record_sale, sale_to_dict
from pos_pricing.utils.money import to_decimal

carts_bp = Blueprint('carts', __name__, url_prefix='/carts')


def _cart_store():
    return current_app.extensions['cart_store']


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BusinessLogicError(f'{field} must be an integer')


def _decimal(value, field):
    try:
        return to_decimal(value, field)
    except ValueError as e:
        raise BusinessLogicError(str(e))


def _expected_version(payload: dict):
    raw = payload.get('expected_version', request.args.get('expected_version'))
    if raw is None or raw == '':
        return None
    return _int(raw, 'expected_version')


def _addons(raw_addons):
    try:
        return tuple(Addon.from_dict(addon) for addon in raw_addons or [])
    except (ValueError, TypeError, AttributeError) as e:
        raise BusinessLogicError(f'Invalid addon: {e}')


def _catalog():
    return get_store_catalog(get_session(), g.store_id)


def _inventory_check():
    """Inventory veto hook, or None when checks are disabled."""
    config = current_app.config
    if not config.get('INVENTORY_CHECK_ENABLED') or not config.get('INVENTORY_API_URL'):
        return None
    client = InventoryClient(
        config['INVENTORY_API_URL'],
        timeout=config.get('INVENTORY_API_TIMEOUT', 5),
        auth_token=g.get('auth_token')
    )
    return client.check_cart


def _priced_response(cart_id: str, status: int = 200):
    promotions, _ = _catalog()
    snapshot, result = _cart_store().pricing(cart_id, promotions, store_id=g.store_id)
    return jsonify({'status': 'ok', 'cart': snapshot.to_dict(), 'pricing': result.to_dict()}), status


def _dispatch(cart_id: str, action, payload: dict, check_inventory: bool = False):
    _cart_store().dispatch(
        cart_id, action,
        expected_version=_expected_version(payload),
        store_id=g.store_id,
        inventory_check=_inventory_check() if check_inventory else None
    )
    return _priced_response(cart_id)


@carts_bp.route('', methods=['POST'])
@require_store
def create_cart():
    """Open an empty cart for the current store."""
    payload = _payload()
    snapshot = _cart_store().create(g.store_id, payload.get('cart_id'))
    current_app.logger.info(f"Cart {snapshot.cart_id} opened by {g.get('cashier_name') or 'unknown cashier'}")
    return _priced_response(snapshot.cart_id, 201)


@carts_bp.route('/<cart_id>', methods=['GET'])
@require_store
def get_cart(cart_id):
    return _priced_response(cart_id)


@carts_bp.route('/<cart_id>', methods=['DELETE'])
@require_store
def discard_cart(cart_id):
    _cart_store().discard(cart_id, store_id=g.store_id)
    return jsonify({'status': 'ok', 'cart_id': cart_id})


@carts_bp.route('/<cart_id>/items', methods=['POST'])
@require_store
def add_item(cart_id):
    """
    Add a product or merchandise line.

    Body: {product_id, name, unit_price, quantity?, kind?, category?, addons?, expected_version?}
    """
    payload = _payload()
    if not payload.get('product_id') or not payload.get('name'):
        raise BusinessLogicError('product_id and name are required')
    try:
        kind = ItemKind(payload.get('kind', ItemKind.PRODUCT.value))
    except ValueError:
        raise BusinessLogicError(f"Unknown item kind {payload.get('kind')!r}")

    action = AddItem(
        product_id=str(payload['product_id']),
        name=payload['name'],
        unit_price=_decimal(payload.get('unit_price'), 'unit_price'),
        quantity=_int(payload.get('quantity', 1), 'quantity'),
        kind=kind,
        category=payload.get('category'),
        addons=_addons(payload.get('addons')),
    )
    return _dispatch(cart_id, action, payload, check_inventory=True)


@carts_bp.route('/<cart_id>/items/<line_id>', methods=['PATCH'])
@require_store
def set_quantity(cart_id, line_id):
    payload = _payload()
    action = SetQuantity(line_id=line_id, quantity=_int(payload.get('quantity'), 'quantity'))
    return _dispatch(cart_id, action, payload, check_inventory=True)


@carts_bp.route('/<cart_id>/items/<line_id>', methods=['DELETE'])
@require_store
def remove_item(cart_id, line_id):
    payload = _payload()
    return _dispatch(cart_id, RemoveItem(line_id=line_id), payload)


@carts_bp.route('/<cart_id>/items/<line_id>/addons', methods=['PUT'])
@require_store
def set_addons(cart_id, line_id):
    """
    Replace addons of a line.

    With instance_index, only that unit gets the new addons and moves to
    its own line right after the original one.
    """
    payload = _payload()
    instance_index = payload.get('instance_index')
    action = SetAddons(
        line_id=line_id,
        addons=_addons(payload.get('addons')),
        instance_index=None if instance_index is None else _int(instance_index, 'instance_index'),
    )
    return _dispatch(cart_id, action, payload, check_inventory=True)


@carts_bp.route('/<cart_id>/bundles', methods=['POST'])
@require_store
def add_bundle(cart_id):
    """
    Add one or more sets of a buy-X-get-Y promotion.

    Body: {promotion_id, products: [{product_id, name, unit_price, category?}], sets?}
    """
    payload = _payload()
    promotions, _ = _catalog()
    promotion = find_promotion(promotions, payload.get('promotion_id'))
    if promotion is None or not promotion.is_bundle:
        raise NotFoundError(f"Bundle promotion {payload.get('promotion_id')} not found")

    products = []
    for raw in payload.get('products') or []:
        if not raw.get('product_id') or not raw.get('name'):
            raise BusinessLogicError('Every bundle product needs product_id and name')
        products.append(ProductRef(
            product_id=str(raw['product_id']),
            name=raw['name'],
            unit_price=_decimal(raw.get('unit_price'), 'unit_price'),
            category=raw.get('category'),
        ))

    action = AddBundle(promotion=promotion, products=tuple(products), sets=_int(payload.get('sets', 1), 'sets'))
    return _dispatch(cart_id, action, payload, check_inventory=True)


@carts_bp.route('/<cart_id>/bundles/<group_id>', methods=['DELETE'])
@require_store
def remove_bundle(cart_id, group_id):
    """Remove a bundle group; ?one_set=true removes a single complete set."""
    payload = _payload()
    promotion = None
    if request.args.get('one_set', '').lower() in ('1', 'true', 'yes'):
        snapshot = _cart_store().get(cart_id, store_id=g.store_id)
        members = [item for item in snapshot.items if str(item.bundle_group_id) == group_id]
        if not members:
            raise NotFoundError(f'Bundle {group_id} not found in cart')
        promotions, _ = _catalog()
        promotion = find_promotion(promotions, members[0].bundle_promotion_id)
    return _dispatch(cart_id, RemoveBundle(group_id=BundleGroupId(group_id), promotion=promotion), payload)


@carts_bp.route('/<cart_id>/discounts', methods=['POST'])
@require_store
def apply_discount(cart_id):
    """
    Apply a manual discount.

    Body: {discount_id, selected_quantities: {item_index: units}, expected_version?}
    """
    payload = _payload()
    _, discounts = _catalog()
    discount = find_discount(discounts, payload.get('discount_id'))
    if discount is None:
        raise NotFoundError(f"Discount {payload.get('discount_id')} not found")

    raw_selection = payload.get('selected_quantities') or {}
    if not isinstance(raw_selection, dict):
        raise BusinessLogicError('selected_quantities must be an object')
    selection = {_int(index, 'item index'): _int(qty, 'quantity') for index, qty in raw_selection.items()}
    return _dispatch(cart_id, ApplyDiscount(discount=discount, selected_quantities=selection), payload)


@carts_bp.route('/<cart_id>/discounts/<discount_id>', methods=['DELETE'])
@require_store
def remove_discount(cart_id, discount_id):
    payload = _payload()
    return _dispatch(cart_id, RemoveDiscount(discount_id=discount_id), payload)


@carts_bp.route('/<cart_id>/discounts/eligible', methods=['GET'])
@require_store
def eligible_discounts(cart_id):
    promotions, discounts = _catalog()
    snapshot, result = _cart_store().pricing(cart_id, promotions, store_id=g.store_id)
    report = list_eligible_discounts(snapshot.items, discounts, snapshot.applied_discounts, result.item_promotions)
    return jsonify({'status': 'ok', 'cart_version': snapshot.version, 'discounts': report})


@carts_bp.route('/<cart_id>/clear', methods=['POST'])
@require_store
def clear_cart(cart_id):
    payload = _payload()
    return _dispatch(cart_id, ClearCart(), payload)


@carts_bp.route('/<cart_id>/checkout', methods=['POST'])
@require_store
def checkout(cart_id):
    """
    Persist the cart as a completed sale and close it.

    Body: {idempotency_key?, payment_method?, expected_version?}
    """
    payload = _payload()
    promotions, _ = _catalog()
    idempotency_key = payload.get('idempotency_key') or request.headers.get('Idempotency-Key')

    def persist(snapshot, result):
        return record_sale(
            get_session(), g.store_id, snapshot, result,
            idempotency_key=idempotency_key,
            payment_method=payload.get('payment_method', 'CASH'),
            cashier_name=g.get('cashier_name'),
        )

    sale = _cart_store().checkout(
        cart_id, promotions, persist,
        expected_version=_expected_version(payload),
        store_id=g.store_id
    )
    return jsonify({'status': 'ok', 'sale': sale_to_dict(sale)}), 201
