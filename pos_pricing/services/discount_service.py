"""Manual discount allocation against operator-selected quantities."""
import logging
from decimal import Decimal
from typing import Dict, List, Mapping, Sequence

from pos_pricing.exceptions import (
    BusinessLogicError, DiscountNotApplicableError, InsufficientUndiscountedQuantityError, NotFoundError
)
from pos_pricing.models.cart import LineItem
from pos_pricing.models.pricing import (
    AppliedManualDiscount, DiscountDefinition, ItemAllocation, ItemPromotionAllocation, per_unit_discount
)
from pos_pricing.services.grouping_service import bundle_member_indexes, group_items
from pos_pricing.services.promotion_service import manual_quantities
from pos_pricing.utils.money import ZERO

logger = logging.getLogger(__name__)


def cart_subtotal(items: Sequence[LineItem]) -> Decimal:
    return sum((item.line_subtotal for item in items), ZERO)


def discount_per_unit(discount: DiscountDefinition, item: LineItem) -> Decimal:
    """Discount on one unit, computed on price plus the unit's addons."""
    return per_unit_discount(discount.kind.value, discount.value, item.unit_price + item.addon_unit_cost)


def available_quantities(items: Sequence[LineItem], applied: Sequence[AppliedManualDiscount]) -> Dict[int, int]:
    """
    Undiscounted units per item index.

    Bundle members and merchandise lines have none.
    """
    bundle_indexes = bundle_member_indexes(group_items(items))
    consumed = manual_quantities(applied)
    available = {}
    for index, item in enumerate(items):
        if index in bundle_indexes or not item.is_product:
            available[index] = 0
        else:
            available[index] = max(0, item.quantity - consumed.get(index, 0))
    return available


def apply_discount(items: Sequence[LineItem], discount: DiscountDefinition,
                   selected_quantities: Mapping[int, int],
                   applied: Sequence[AppliedManualDiscount] = ()) -> AppliedManualDiscount:
    """
    Apply a manual discount to exactly the selected quantities.

    Args:
        items: Cart lines
        discount: Discount to apply
        selected_quantities: {item_index: units}
        applied: Discounts already on the cart

    Raises:
        BusinessLogicError: Nothing selected, or discount already applied
        NotFoundError: A selected index is not in the cart
        DiscountNotApplicableError: Minimum spend not met or item out of scope
        InsufficientUndiscountedQuantityError: More units than remain undiscounted
    """
    if any(existing.discount.id == discount.id for existing in applied):
        raise BusinessLogicError(f'Discount "{discount.name}" is already applied')

    selection = {int(index): int(qty) for index, qty in selected_quantities.items() if int(qty) != 0}
    if not selection:
        raise BusinessLogicError('Select at least one item to discount')
    if any(qty < 0 for qty in selection.values()):
        raise BusinessLogicError('Selected quantities must be positive')

    subtotal = cart_subtotal(items)
    if subtotal < discount.min_spend:
        raise DiscountNotApplicableError(
            f'"{discount.name}" requires a minimum spend of {discount.min_spend}', discount.name
        )

    available = available_quantities(items, applied)
    allocations = {}
    for index in sorted(selection):
        if index < 0 or index >= len(items):
            raise NotFoundError(f'No cart item at position {index}')
        item = items[index]
        if not discount.matches(item):
            raise DiscountNotApplicableError(f'"{discount.name}" does not apply to {item.name}', discount.name)
        quantity = selection[index]
        if quantity > available[index]:
            raise InsufficientUndiscountedQuantityError(item.name, quantity, available[index])
        allocations[index] = ItemAllocation(quantity=quantity, amount=quantity * discount_per_unit(discount, item))

    result = AppliedManualDiscount(discount=discount, item_allocations=allocations)
    logger.info(f"[PRICING] Discount {discount.name!r} applied to {len(allocations)} item(s): {result.amount}")
    return result


def remove_discount(applied: Sequence[AppliedManualDiscount], discount_id) -> tuple:
    """Drop one applied discount, freeing its units."""
    remaining = tuple(a for a in applied if a.discount.id != str(discount_id))
    if len(remaining) == len(applied):
        raise NotFoundError(f'Discount {discount_id} is not applied to this cart')
    return remaining


def list_eligible_discounts(items: Sequence[LineItem], discounts: Sequence[DiscountDefinition],
                            applied: Sequence[AppliedManualDiscount] = (),
                            item_promotions: Sequence[ItemPromotionAllocation] = ()) -> List[dict]:
    """
    Report, per catalog discount, how it would do on this cart.

    potential_discount covers every undiscounted unit of every eligible
    item. is_better_than_promo is true when, for some eligible item, the
    discount per unit beats the promotion per unit the item gets now.
    """
    subtotal = cart_subtotal(items)
    available = available_quantities(items, applied)
    applied_ids = {a.discount.id for a in applied}

    promo_per_unit: Dict[int, Decimal] = {}
    for allocation in item_promotions:
        if allocation.quantity > 0:
            promo_per_unit[allocation.item_index] = allocation.promotion_amount / allocation.quantity

    report = []
    for discount in discounts:
        potential = ZERO
        eligible_indexes = []
        better = False
        for index, item in enumerate(items):
            if available[index] <= 0 or not discount.matches(item):
                continue
            eligible_indexes.append(index)
            unit_value = discount_per_unit(discount, item)
            potential += available[index] * unit_value
            if unit_value > promo_per_unit.get(index, ZERO):
                better = True

        meets_min_spend = subtotal >= discount.min_spend
        has_eligible_items = bool(eligible_indexes)
        report.append({
            'discount': discount.to_dict(),
            'potential_discount': str(potential),
            'meets_min_spend': meets_min_spend,
            'has_eligible_items': has_eligible_items,
            'eligible_item_indexes': eligible_indexes,
            'is_better_than_promo': better,
            'is_applied': discount.id in applied_ids,
            'is_enabled': meets_min_spend and has_eligible_items and discount.id not in applied_ids,
        })
    return report
