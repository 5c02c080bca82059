"""
Automatic promotion allocator.

Bundle groups get buy-X-get-Y arithmetic; singleton product lines get the
best matching percentage/fixed promotion on the units no manual discount
already covers.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from pos_pricing.exceptions import OverlapViolation
from pos_pricing.models.cart import LineItem
from pos_pricing.models.pricing import (
    AppliedManualDiscount, ItemPromotionAllocation, PromotionDefinition, per_unit_discount
)
from pos_pricing.services.grouping_service import AllocationGroup, BundleGroup, SingletonGroup, group_items
from pos_pricing.utils.money import ZERO

logger = logging.getLogger(__name__)


def distribute_units(units: int, quantities: Sequence[int]) -> List[int]:
    """
    Split `units` over members proportionally to their quantities.

    Largest remainder method: every member gets the floor of its share,
    leftover units go to the largest remainders, ties to the earlier
    member. The result sums to `units` and never exceeds a member's quantity.
    """
    total = sum(quantities)
    if units <= 0 or total <= 0:
        return [0] * len(quantities)

    shares = [units * quantity // total for quantity in quantities]
    remainders = [units * quantity % total for quantity in quantities]
    leftover = units - sum(shares)
    order = sorted(range(len(quantities)), key=lambda i: (-remainders[i], i))
    for i in order[:leftover]:
        shares[i] += 1
    return shares


def manual_quantities(manual_discounts: Sequence[AppliedManualDiscount]) -> Dict[int, int]:
    """Units per item index already consumed by manual discounts."""
    consumed: Dict[int, int] = {}
    for applied in manual_discounts:
        for index, alloc in applied.item_allocations.items():
            consumed[index] = consumed.get(index, 0) + alloc.quantity
    return consumed


def _bundle_discount(group: BundleGroup, promotion: PromotionDefinition):
    """Discount type/value cached on the bundle lines, else the promotion's."""
    for member in group.members:
        if member.bundle_discount_type and member.bundle_discount_value is not None:
            return member.bundle_discount_type, member.bundle_discount_value
    return promotion.bundle_discount_type, promotion.bundle_discount_value


def _emit(group: BundleGroup, positions: List[int], units: int, promotion: PromotionDefinition,
          discount_type: str, discount_value: Decimal) -> List[ItemPromotionAllocation]:
    quantities = [group.members[p].quantity for p in positions]
    shares = distribute_units(units, quantities)
    allocations = []
    for position, share in zip(positions, shares):
        if share <= 0:
            continue
        member = group.members[position]
        amount = share * per_unit_discount(discount_type, discount_value, member.unit_price)
        allocations.append(ItemPromotionAllocation(
            item_index=group.item_indexes[position],
            quantity=share,
            promotion_amount=amount,
            promotion_name=promotion.name or member.bundle_promotion_name,
            promotion_id=promotion.id,
        ))
    return allocations


def allocate_bundle(group: BundleGroup, promotion: PromotionDefinition) -> List[ItemPromotionAllocation]:
    """Allocate one bundle group against its buy-X-get-Y promotion."""
    discount_type, discount_value = _bundle_discount(group, promotion)
    targets = promotion.target_names

    if len(set(targets)) == 1:
        positions = [p for p, member in enumerate(group.members) if member.name == targets[0]]
        total = sum(group.members[p].quantity for p in positions)
        bundles = total // promotion.bundle_size
        discounted = bundles * promotion.get_quantity
        cap = (group.total_quantity // promotion.bundle_size) * promotion.get_quantity
    else:
        buy_name, get_name = targets[0], targets[1]
        buy_total = sum(m.quantity for m in group.members if m.name == buy_name)
        positions = [p for p, member in enumerate(group.members) if member.name == get_name]
        get_total = sum(group.members[p].quantity for p in positions)
        sets = buy_total // promotion.buy_quantity
        discounted = min(get_total, sets * promotion.get_quantity)
        cap = get_total

    if discounted <= 0:
        return []

    allocations = _emit(group, positions, discounted, promotion, discount_type, discount_value)
    allocated = sum(a.quantity for a in allocations)
    if allocated > cap:
        raise OverlapViolation(f'{group.key}: {allocated} promoted units exceed the bundle limit {cap}')

    logger.debug(f"[PRICING] {group.key}: {allocated} units discounted by {promotion.name!r}")
    return allocations


def best_promotion(item: LineItem, quantity: int, promotions: Sequence[PromotionDefinition]):
    """
    Pick the promotion giving the largest amount on `quantity` units.

    Only a strictly larger amount replaces the current best, so on equal
    amounts the earlier definition is kept.

    Returns:
        Tuple (promotion, amount), or (None, ZERO)
    """
    best, best_amount = None, ZERO
    for promotion in promotions:
        if promotion.is_bundle or not promotion.matches(item):
            continue
        if promotion.min_quantity is not None and quantity < promotion.min_quantity:
            continue
        amount = quantity * per_unit_discount(promotion.kind.value, promotion.value, item.unit_price)
        if best is None or amount > best_amount:
            best, best_amount = promotion, amount
    return best, best_amount


def allocate_singleton(group: SingletonGroup, promotions: Sequence[PromotionDefinition],
                       consumed: int) -> Optional[ItemPromotionAllocation]:
    item = group.member
    if not item.is_product:
        return None
    quantity = item.quantity - consumed
    if quantity <= 0:
        return None

    promotion, amount = best_promotion(item, quantity, promotions)
    if promotion is None or amount <= ZERO:
        return None
    return ItemPromotionAllocation(
        item_index=group.item_index,
        quantity=quantity,
        promotion_amount=amount,
        promotion_name=promotion.name,
        promotion_id=promotion.id,
    )


def allocate_promotions(items: Sequence[LineItem], promotions: Sequence[PromotionDefinition],
                        manual_discounts: Sequence[AppliedManualDiscount] = (),
                        groups: Optional[List[AllocationGroup]] = None) -> List[ItemPromotionAllocation]:
    """
    Allocate automatic promotions over the whole cart.

    Bundle groups whose promotion is no longer in the catalog get nothing.
    """
    if groups is None:
        groups = group_items(items)
    consumed = manual_quantities(manual_discounts)
    by_id = {promotion.id: promotion for promotion in promotions if promotion.is_bundle}

    allocations: List[ItemPromotionAllocation] = []
    for group in groups:
        if isinstance(group, BundleGroup):
            promotion = by_id.get(group.promotion_id)
            if promotion is None:
                logger.debug(f"[PRICING] {group.key}: promotion {group.promotion_id} not available")
                continue
            allocations.extend(allocate_bundle(group, promotion))
        else:
            allocation = allocate_singleton(group, promotions, consumed.get(group.item_index, 0))
            if allocation is not None:
                allocations.append(allocation)

    assert_no_overlap(items, allocations, manual_discounts)
    return allocations


def assert_no_overlap(items: Sequence[LineItem], item_promotions: Sequence[ItemPromotionAllocation],
                      manual_discounts: Sequence[AppliedManualDiscount]) -> None:
    """Every unit is covered by at most one promotion or discount."""
    covered = manual_quantities(manual_discounts)
    for allocation in item_promotions:
        covered[allocation.item_index] = covered.get(allocation.item_index, 0) + allocation.quantity
    for index, quantity in covered.items():
        if index >= len(items):
            raise OverlapViolation(f'Allocation references missing item {index}')
        if quantity > items[index].quantity:
            raise OverlapViolation(
                f'{items[index].name}: {quantity} units covered, only {items[index].quantity} in cart'
            )
