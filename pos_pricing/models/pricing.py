"""Normalized promotion/discount definitions and allocation results."""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pos_pricing.utils.money import HUNDRED, ZERO, round2


class PromotionKind(str, enum.Enum):
    PERCENTAGE = 'percentage'
    FIXED = 'fixed'
    BUNDLE = 'bundle'


class ApplicationScope(str, enum.Enum):
    ALL_PRODUCTS = 'all_products'
    SPECIFIC_CATEGORIES = 'specific_categories'
    SPECIFIC_PRODUCTS = 'specific_products'


SCOPE_PRIORITY = {
    ApplicationScope.ALL_PRODUCTS: 1,
    ApplicationScope.SPECIFIC_CATEGORIES: 2,
    ApplicationScope.SPECIFIC_PRODUCTS: 3,
}


def per_unit_discount(kind: str, value: Decimal, unit_price: Decimal) -> Decimal:
    """Discount granted on one unit: a percentage of the price, or a fixed amount capped at the price."""
    if kind == PromotionKind.PERCENTAGE.value:
        return unit_price * value / HUNDRED
    return min(unit_price, value)


@dataclass(frozen=True)
class PromotionDefinition:
    """
    One automatic promotion after normalization.

    Bundle promotions use buy_quantity/get_quantity/target_names and the
    bundle_discount_* pair; percentage and fixed promotions use value,
    application_scope and target_names.
    """
    id: str
    name: str
    kind: PromotionKind
    value: Decimal = ZERO
    application_scope: ApplicationScope = ApplicationScope.SPECIFIC_PRODUCTS
    target_names: Tuple[str, ...] = ()
    buy_quantity: int = 1
    get_quantity: int = 1
    bundle_discount_type: Optional[str] = None
    bundle_discount_value: Decimal = ZERO
    min_quantity: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None

    @property
    def priority(self) -> int:
        return SCOPE_PRIORITY[self.application_scope]

    @property
    def is_bundle(self) -> bool:
        return self.kind == PromotionKind.BUNDLE

    @property
    def bundle_size(self) -> int:
        return self.buy_quantity + self.get_quantity

    def matches(self, item) -> bool:
        """Whether a percentage/fixed promotion covers this line."""
        if self.application_scope == ApplicationScope.ALL_PRODUCTS:
            return True
        if self.application_scope == ApplicationScope.SPECIFIC_CATEGORIES:
            return item.category is not None and item.category in self.target_names
        return item.name in self.target_names or (
            item.category is not None and item.category in self.target_names
        )

    def is_active_at(self, moment: datetime) -> bool:
        if self.valid_from and moment < self.valid_from:
            return False
        if self.valid_to and moment > self.valid_to:
            return False
        return True

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'kind': self.kind.value,
            'value': str(self.value),
            'application_scope': self.application_scope.value,
            'target_names': list(self.target_names),
            'buy_quantity': self.buy_quantity,
            'get_quantity': self.get_quantity,
            'bundle_discount_type': self.bundle_discount_type,
            'bundle_discount_value': str(self.bundle_discount_value),
            'min_quantity': self.min_quantity,
            'priority': self.priority,
        }


@dataclass(frozen=True)
class DiscountDefinition:
    """A manual discount an operator may apply to selected units."""
    id: str
    name: str
    kind: PromotionKind
    value: Decimal
    min_spend: Decimal = ZERO
    application_scope: ApplicationScope = ApplicationScope.ALL_PRODUCTS
    target_products: Tuple[str, ...] = ()
    target_categories: Tuple[str, ...] = ()

    def matches(self, item) -> bool:
        if self.application_scope == ApplicationScope.ALL_PRODUCTS:
            return True
        if self.application_scope == ApplicationScope.SPECIFIC_PRODUCTS:
            return item.name in self.target_products
        return item.category is not None and item.category in self.target_categories

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'kind': self.kind.value,
            'value': str(self.value),
            'min_spend': str(self.min_spend),
            'application_scope': self.application_scope.value,
            'target_products': list(self.target_products),
            'target_categories': list(self.target_categories),
        }


@dataclass(frozen=True)
class ItemAllocation:
    quantity: int
    amount: Decimal


@dataclass(frozen=True)
class AppliedManualDiscount:
    """A discount applied to explicit quantities, keyed by cart item index."""
    discount: DiscountDefinition
    item_allocations: Dict[int, ItemAllocation] = field(default_factory=dict)

    @property
    def amount(self) -> Decimal:
        return sum((alloc.amount for alloc in self.item_allocations.values()), ZERO)

    def quantity_for(self, item_index: int) -> int:
        alloc = self.item_allocations.get(item_index)
        return alloc.quantity if alloc else 0

    def to_dict(self):
        return {
            'discount': self.discount.to_dict(),
            'amount': str(self.amount),
            'item_allocations': [
                {'item_index': index, 'quantity': alloc.quantity, 'amount': str(alloc.amount)}
                for index, alloc in sorted(self.item_allocations.items())
            ],
        }


@dataclass(frozen=True)
class ItemPromotionAllocation:
    item_index: int
    quantity: int
    promotion_amount: Decimal
    promotion_name: str
    promotion_id: Optional[str] = None

    def to_dict(self):
        return {
            'item_index': self.item_index,
            'quantity': self.quantity,
            'promotion_amount': str(self.promotion_amount),
            'promotion_name': self.promotion_name,
            'promotion_id': self.promotion_id,
        }


@dataclass(frozen=True)
class AllocationResult:
    """Output of one full recomputation of a cart."""
    item_promotions: List[ItemPromotionAllocation]
    subtotal: Decimal
    addons_cost: Decimal
    promotional_discount: Decimal
    manual_discount: Decimal
    total: Decimal

    def promotion_quantity_for(self, item_index: int) -> int:
        return sum(p.quantity for p in self.item_promotions if p.item_index == item_index)

    def promotion_amount_for(self, item_index: int) -> Decimal:
        return sum(
            (p.promotion_amount for p in self.item_promotions if p.item_index == item_index), ZERO
        )

    def to_dict(self):
        return {
            'item_promotions': [p.to_dict() for p in self.item_promotions],
            'subtotal': str(round2(self.subtotal)),
            'addons_cost': str(round2(self.addons_cost)),
            'promotional_discount': str(round2(self.promotional_discount)),
            'manual_discount': str(round2(self.manual_discount)),
            'total': str(self.total),
        }
