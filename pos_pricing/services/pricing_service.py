"""
Cart total calculation.

allocate() is the forward pipeline: grouping, automatic promotions on the
units manual discounts leave free, then totals.
"""
import logging
from typing import Sequence

from pos_pricing.models.cart import LineItem
from pos_pricing.models.pricing import AllocationResult, AppliedManualDiscount, ItemPromotionAllocation, PromotionDefinition
from pos_pricing.services.grouping_service import group_items
from pos_pricing.services.promotion_service import allocate_promotions
from pos_pricing.utils.money import ZERO, round2

logger = logging.getLogger(__name__)


def calculate_totals(items: Sequence[LineItem], item_promotions: Sequence[ItemPromotionAllocation],
                     manual_discounts: Sequence[AppliedManualDiscount]) -> AllocationResult:
    """
    Fold lines and allocations into totals.

    Components stay unrounded; the total is rounded half-up once and never
    goes below zero.
    """
    subtotal = sum((item.unit_price * item.quantity for item in items), ZERO)
    addons_cost = sum(
        (addon.unit_price * addon.quantity * item.quantity for item in items for addon in item.addons), ZERO
    )
    promotional = sum((p.promotion_amount for p in item_promotions), ZERO)
    manual = sum((d.amount for d in manual_discounts), ZERO)
    total = max(ZERO, round2(subtotal + addons_cost - manual - promotional))

    return AllocationResult(
        item_promotions=list(item_promotions),
        subtotal=subtotal,
        addons_cost=addons_cost,
        promotional_discount=promotional,
        manual_discount=manual,
        total=round2(total),
    )


def allocate(items: Sequence[LineItem], promotions: Sequence[PromotionDefinition],
             manual_discounts: Sequence[AppliedManualDiscount] = ()) -> AllocationResult:
    """Recompute every allocation of a cart and its totals."""
    items = tuple(items)
    groups = group_items(items)
    item_promotions = allocate_promotions(items, promotions, manual_discounts, groups=groups)
    result = calculate_totals(items, item_promotions, manual_discounts)
    logger.debug(
        f"[PRICING] {len(items)} lines, {len(groups)} groups: subtotal={result.subtotal} "
        f"promo={result.promotional_discount} manual={result.manual_discount} total={result.total}"
    )
    return result
