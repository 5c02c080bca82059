"""
Cart service.

Every cart mutation is an action passed through reduce_cart(), which
returns a new immutable snapshot with version + 1. CartStore owns the live
carts: one lock per cart, optimistic version checks, and a per-version
cache of the last pricing result.
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from pos_pricing.blueprints.metrics import cart_recomputations_total
from pos_pricing.exceptions import BusinessLogicError, NotFoundError, StaleCartError
from pos_pricing.models.cart import Addon, BundleGroupId, CartSnapshot, ItemKind, LineItem, new_line_id
from pos_pricing.models.pricing import (
    AppliedManualDiscount, DiscountDefinition, PromotionDefinition
)
from pos_pricing.services.discount_service import apply_discount, remove_discount
from pos_pricing.services.grouping_service import UnitInstance, find_group, group_items, line_group_key
from pos_pricing.services.pricing_service import allocate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AddItem:
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int = 1
    kind: ItemKind = ItemKind.PRODUCT
    category: Optional[str] = None
    addons: Tuple[Addon, ...] = ()


@dataclass(frozen=True)
class SetQuantity:
    line_id: str
    quantity: int


@dataclass(frozen=True)
class RemoveItem:
    line_id: str


@dataclass(frozen=True)
class SetAddons:
    """Replace addons of a whole line, or of one unit split into its own line."""
    line_id: str
    addons: Tuple[Addon, ...]
    instance_index: Optional[int] = None


@dataclass(frozen=True)
class ProductRef:
    product_id: str
    name: str
    unit_price: Decimal
    category: Optional[str] = None


@dataclass(frozen=True)
class AddBundle:
    promotion: PromotionDefinition
    products: Tuple[ProductRef, ...]
    sets: int = 1
    group_id: Optional[BundleGroupId] = None


@dataclass(frozen=True)
class RemoveBundle:
    """Remove a whole bundle group, or one complete set when the promotion is given."""
    group_id: BundleGroupId
    promotion: Optional[PromotionDefinition] = None


@dataclass(frozen=True)
class ApplyDiscount:
    discount: DiscountDefinition
    selected_quantities: Mapping[int, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RemoveDiscount:
    discount_id: str


@dataclass(frozen=True)
class ClearCart:
    pass


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------

def _line_index(items: Sequence[LineItem], line_id: str) -> int:
    for index, item in enumerate(items):
        if item.line_id == line_id:
            return index
    raise NotFoundError(f'Cart line {line_id} not found')


def _discounted_quantity(applied: Sequence[AppliedManualDiscount], index: int) -> int:
    return sum(a.quantity_for(index) for a in applied)


def reindex_discounts(old_items: Sequence[LineItem], new_items: Sequence[LineItem],
                      applied: Sequence[AppliedManualDiscount]) -> Tuple[AppliedManualDiscount, ...]:
    """
    Move discount allocations to the lines' new positions.

    A discount touching a line that no longer exists is dropped as a whole.
    """
    positions = {item.line_id: index for index, item in enumerate(new_items)}
    result = []
    for discount in applied:
        moved = {}
        for old_index, alloc in discount.item_allocations.items():
            new_index = positions.get(old_items[old_index].line_id)
            if new_index is None:
                moved = None
                break
            moved[new_index] = alloc
        if moved is None:
            logger.info(f"[PRICING] Discount {discount.discount.name!r} dropped with its line")
            continue
        result.append(replace(discount, item_allocations=moved))
    return tuple(result)


def _add_item(cart: CartSnapshot, action: AddItem):
    if action.quantity <= 0:
        raise BusinessLogicError('Quantity must be greater than 0')
    if action.unit_price < 0:
        raise BusinessLogicError('Price cannot be negative')

    items = list(cart.items)
    if not action.addons:
        for index, item in enumerate(items):
            if (item.product_id == action.product_id and item.kind == action.kind
                    and not item.is_from_bundle and not item.addons):
                items[index] = item.with_quantity(item.quantity + action.quantity)
                return items, cart.applied_discounts

    items.append(LineItem(
        line_id=new_line_id(),
        product_id=action.product_id,
        name=action.name,
        unit_price=action.unit_price,
        quantity=action.quantity,
        kind=action.kind,
        category=action.category,
        addons=tuple(action.addons),
    ))
    return items, cart.applied_discounts


def _remove_item(cart: CartSnapshot, action: RemoveItem):
    index = _line_index(cart.items, action.line_id)
    items = [item for i, item in enumerate(cart.items) if i != index]
    return items, reindex_discounts(cart.items, items, cart.applied_discounts)


def _set_quantity(cart: CartSnapshot, action: SetQuantity):
    if action.quantity < 0:
        raise BusinessLogicError('Quantity cannot be negative')
    if action.quantity == 0:
        return _remove_item(cart, RemoveItem(action.line_id))

    index = _line_index(cart.items, action.line_id)
    item = cart.items[index]
    discounted = _discounted_quantity(cart.applied_discounts, index)
    if action.quantity < discounted:
        raise BusinessLogicError(
            f'{item.name} has {discounted} discounted units; remove the discount before reducing it'
        )
    items = list(cart.items)
    items[index] = item.with_quantity(action.quantity)
    return items, cart.applied_discounts


def _set_addons(cart: CartSnapshot, action: SetAddons):
    index = _line_index(cart.items, action.line_id)
    item = cart.items[index]
    if _discounted_quantity(cart.applied_discounts, index):
        raise BusinessLogicError(f'Remove the discount on {item.name} before editing its addons')

    items = list(cart.items)
    if action.instance_index is None or item.quantity == 1:
        items[index] = replace(item, addons=tuple(action.addons))
        return items, cart.applied_discounts

    group = find_group(group_items(cart.items), line_group_key(item))
    if UnitInstance(item.line_id, action.instance_index) not in group.instances:
        raise NotFoundError(f'{item.name} has no unit {action.instance_index}')
    items[index] = item.with_quantity(item.quantity - 1)
    items.insert(index + 1, replace(item, line_id=new_line_id(), quantity=1, addons=tuple(action.addons)))
    return items, reindex_discounts(cart.items, items, cart.applied_discounts)


def _bundle_line(promotion: PromotionDefinition, product: ProductRef, quantity: int,
                 group_id: BundleGroupId) -> LineItem:
    return LineItem(
        line_id=new_line_id(),
        product_id=product.product_id,
        name=product.name,
        unit_price=product.unit_price,
        quantity=quantity,
        category=product.category,
        is_from_bundle=True,
        bundle_group_id=group_id,
        bundle_promotion_id=promotion.id,
        bundle_promotion_name=promotion.name,
        bundle_discount_type=promotion.bundle_discount_type,
        bundle_discount_value=promotion.bundle_discount_value,
    )


def _add_bundle(cart: CartSnapshot, action: AddBundle):
    promotion = action.promotion
    if not promotion.is_bundle:
        raise BusinessLogicError(f'"{promotion.name}" is not a bundle promotion')
    if action.sets <= 0:
        raise BusinessLogicError('Bundle sets must be greater than 0')

    products = {product.name: product for product in action.products}
    missing = [name for name in promotion.target_names if name not in products]
    if missing:
        raise BusinessLogicError(f'Bundle product not available: {", ".join(missing)}')

    group_id = action.group_id or BundleGroupId.mint(promotion.id)
    targets = promotion.target_names
    if len(set(targets)) == 1:
        lines = [_bundle_line(promotion, products[targets[0]], promotion.bundle_size * action.sets, group_id)]
    else:
        lines = [
            _bundle_line(promotion, products[targets[0]], promotion.buy_quantity * action.sets, group_id),
            _bundle_line(promotion, products[targets[1]], promotion.get_quantity * action.sets, group_id),
        ]
    return list(cart.items) + lines, cart.applied_discounts


def _set_units(promotion: PromotionDefinition) -> Dict[str, int]:
    targets = promotion.target_names
    if len(set(targets)) == 1:
        return {targets[0]: promotion.bundle_size}
    return {targets[0]: promotion.buy_quantity, targets[1]: promotion.get_quantity}


def _remove_bundle(cart: CartSnapshot, action: RemoveBundle):
    group = find_group(group_items(cart.items), f"bundle:{action.group_id}")
    if group is None:
        raise NotFoundError(f'Bundle {action.group_id} not found in cart')
    indexes = list(group.item_indexes)

    items = list(cart.items)
    to_remove = _set_units(action.promotion) if action.promotion else None
    in_group = {}
    for i in indexes:
        in_group[items[i].name] = in_group.get(items[i].name, 0) + items[i].quantity

    if to_remove is None or any(in_group.get(name, 0) < units for name, units in to_remove.items()):
        kept = [item for i, item in enumerate(items) if i not in indexes]
    else:
        # One set: take units from the last lines of the group first
        for i in reversed(indexes):
            needed = to_remove.get(items[i].name, 0)
            if needed <= 0:
                continue
            taken = min(needed, items[i].quantity)
            to_remove[items[i].name] = needed - taken
            items[i] = items[i].with_quantity(items[i].quantity - taken)
        kept = [item for item in items if item.quantity > 0]

    return kept, reindex_discounts(cart.items, kept, cart.applied_discounts)


def _apply_discount(cart: CartSnapshot, action: ApplyDiscount):
    applied = apply_discount(cart.items, action.discount, action.selected_quantities, cart.applied_discounts)
    return cart.items, cart.applied_discounts + (applied,)


def _remove_discount(cart: CartSnapshot, action: RemoveDiscount):
    return cart.items, remove_discount(cart.applied_discounts, action.discount_id)


def _clear(cart: CartSnapshot, action: ClearCart):
    return (), ()


_REDUCERS = {
    AddItem: _add_item,
    SetQuantity: _set_quantity,
    RemoveItem: _remove_item,
    SetAddons: _set_addons,
    AddBundle: _add_bundle,
    RemoveBundle: _remove_bundle,
    ApplyDiscount: _apply_discount,
    RemoveDiscount: _remove_discount,
    ClearCart: _clear,
}


def reduce_cart(cart: CartSnapshot, action) -> CartSnapshot:
    """Apply one action; the input snapshot is left untouched."""
    reducer = _REDUCERS.get(type(action))
    if reducer is None:
        raise BusinessLogicError(f'Unknown cart action {type(action).__name__}')
    items, applied = reducer(cart, action)
    return replace(cart, version=cart.version + 1, items=tuple(items), applied_discounts=tuple(applied))


def quantity_increase(before: CartSnapshot, after: CartSnapshot):
    """
    Whether a mutation raised any product quantity.

    Returns:
        Tuple (increased, new_product_id) where new_product_id is a product
        absent before the mutation, if any.
    """
    def totals(cart):
        counts = {}
        for item in cart.items:
            counts[item.product_id] = counts.get(item.product_id, 0) + item.quantity
        return counts

    old, new = totals(before), totals(after)
    added = [pid for pid in new if pid not in old]
    increased = bool(added) or any(new[pid] > old[pid] for pid in new if pid in old)
    return increased, (added[0] if added else None)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class _CartEntry:
    def __init__(self, snapshot: CartSnapshot, store_id):
        self.snapshot = snapshot
        self.store_id = store_id
        self.lock = threading.Lock()
        self.pricing = None  # (version, promotions, AllocationResult)
        self.closed = False
        self.touched_at = time.monotonic()


class CartStore:
    """
    In-process owner of live carts.

    Mutations, pricing and checkout of one cart serialize on its lock;
    different carts never share state. Carts idle for longer than
    `idle_ttl` seconds are dropped by sweep_idle().
    """

    def __init__(self, idle_ttl: Optional[float] = None):
        self._entries: Dict[str, _CartEntry] = {}
        self._guard = threading.Lock()
        self.idle_ttl = idle_ttl

    def create(self, store_id, cart_id: Optional[str] = None) -> CartSnapshot:
        self.sweep_idle()
        cart_id = cart_id or uuid.uuid4().hex
        with self._guard:
            if cart_id in self._entries:
                raise BusinessLogicError(f'Cart {cart_id} already exists', 409)
            entry = _CartEntry(CartSnapshot(cart_id=cart_id), store_id)
            self._entries[cart_id] = entry
        logger.info(f"[PRICING] Cart {cart_id} opened for store {store_id}")
        return entry.snapshot

    def _entry(self, cart_id: str, store_id=None) -> _CartEntry:
        with self._guard:
            entry = self._entries.get(cart_id)
        if entry is None or (store_id is not None and entry.store_id != store_id):
            raise NotFoundError(f'Cart {cart_id} not found')
        return entry

    @staticmethod
    def _check_open(entry: _CartEntry) -> None:
        # Caller holds entry.lock
        if entry.closed:
            raise NotFoundError(f'Cart {entry.snapshot.cart_id} not found')
        entry.touched_at = time.monotonic()

    def _close(self, entry: _CartEntry) -> None:
        # Caller holds entry.lock
        entry.closed = True
        with self._guard:
            if self._entries.get(entry.snapshot.cart_id) is entry:
                del self._entries[entry.snapshot.cart_id]

    def get(self, cart_id: str, store_id=None) -> CartSnapshot:
        return self._entry(cart_id, store_id).snapshot

    def dispatch(self, cart_id: str, action, expected_version: Optional[int] = None, store_id=None,
                 inventory_check: Optional[Callable[[Sequence[LineItem], Optional[str]], None]] = None
                 ) -> CartSnapshot:
        """
        Apply an action to a live cart.

        Args:
            cart_id: Cart to mutate
            action: One of the cart actions
            expected_version: Version the caller read; None skips the check
            store_id: Store the caller acts for
            inventory_check: Called with the simulated lines when the action
                raises a quantity; raises QuantityConflictError to veto it

        Raises:
            StaleCartError: expected_version is not the current version
            NotFoundError: the cart was checked out or discarded meanwhile
        """
        entry = self._entry(cart_id, store_id)
        with entry.lock:
            self._check_open(entry)
            current = entry.snapshot
            if expected_version is not None and expected_version != current.version:
                raise StaleCartError(cart_id, expected_version, current.version)

            updated = reduce_cart(current, action)
            if inventory_check is not None:
                increased, new_product_id = quantity_increase(current, updated)
                if increased:
                    inventory_check(updated.items, new_product_id)

            entry.snapshot = updated
            entry.pricing = None
            return updated

    def _price(self, entry: _CartEntry, promotions: Tuple[PromotionDefinition, ...]):
        # Caller holds entry.lock
        snapshot = entry.snapshot
        cached = entry.pricing
        if cached is not None and cached[0] == snapshot.version and cached[1] == promotions:
            return snapshot, cached[2]

        result = allocate(snapshot.items, promotions, snapshot.applied_discounts)
        cart_recomputations_total.inc()
        entry.pricing = (snapshot.version, promotions, result)
        return snapshot, result

    def pricing(self, cart_id: str, promotions: Sequence[PromotionDefinition], store_id=None):
        """
        Current snapshot and its allocation, recomputed only when the cart
        or the promotion list changed.

        Returns:
            Tuple (CartSnapshot, AllocationResult)
        """
        entry = self._entry(cart_id, store_id)
        with entry.lock:
            self._check_open(entry)
            return self._price(entry, tuple(promotions))

    def checkout(self, cart_id: str, promotions: Sequence[PromotionDefinition],
                 persist: Callable[[CartSnapshot, object], Any],
                 expected_version: Optional[int] = None, store_id=None):
        """
        Price the cart, hand it to `persist` and close it, all under the cart lock.

        The cart is closed only when `persist` returns; if it raises, the
        cart stays open unchanged. A concurrent checkout or mutation waiting
        on the lock finds the cart gone.

        Returns:
            Whatever `persist(snapshot, result)` returned
        """
        entry = self._entry(cart_id, store_id)
        with entry.lock:
            self._check_open(entry)
            if expected_version is not None and expected_version != entry.snapshot.version:
                raise StaleCartError(cart_id, expected_version, entry.snapshot.version)

            snapshot, result = self._price(entry, tuple(promotions))
            persisted = persist(snapshot, result)
            self._close(entry)
        logger.info(f"[PRICING] Cart {cart_id} checked out at version {snapshot.version}")
        return persisted

    def discard(self, cart_id: str, store_id=None) -> None:
        entry = self._entry(cart_id, store_id)
        with entry.lock:
            self._check_open(entry)
            self._close(entry)
        logger.info(f"[PRICING] Cart {cart_id} closed")

    def sweep_idle(self, now: Optional[float] = None) -> int:
        """
        Drop carts untouched for longer than idle_ttl.

        Carts whose lock is busy are left for the next sweep.

        Returns:
            Number of carts dropped
        """
        if not self.idle_ttl:
            return 0
        now = time.monotonic() if now is None else now
        with self._guard:
            idle = [entry for entry in self._entries.values() if now - entry.touched_at > self.idle_ttl]

        dropped = 0
        for entry in idle:
            if not entry.lock.acquire(blocking=False):
                continue
            try:
                if not entry.closed and now - entry.touched_at > self.idle_ttl:
                    self._close(entry)
                    dropped += 1
            finally:
                entry.lock.release()
        if dropped:
            logger.info(f"[PRICING] Dropped {dropped} idle cart(s)")
        return dropped
