"""Cart line items and snapshots (pure data, no persistence)."""
import enum
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Optional, Tuple

from pos_pricing.exceptions import NotFoundError
from pos_pricing.utils.money import ZERO, to_decimal


class ItemKind(str, enum.Enum):
    """Kind of sellable line."""
    PRODUCT = 'product'
    MERCHANDISE = 'merchandise'


@dataclass(frozen=True)
class BundleGroupId:
    """Relation key shared by every unit of one automatic bundle instance."""
    value: str

    @classmethod
    def mint(cls, promotion_id) -> 'BundleGroupId':
        return cls(f"bundle-{promotion_id}-{uuid.uuid4().hex[:12]}")

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class Addon:
    """Addon attached to every unit of its parent line."""
    addon_id: str
    name: str
    unit_price: Decimal
    quantity: int = 1

    @property
    def cost_per_unit(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self):
        return {
            'addon_id': self.addon_id,
            'name': self.name,
            'unit_price': str(self.unit_price),
            'quantity': self.quantity,
        }

    @classmethod
    def from_dict(cls, data) -> 'Addon':
        quantity = int(data.get('quantity', 1))
        if quantity <= 0:
            raise ValueError('Addon quantity must be greater than 0')
        return cls(
            addon_id=str(data.get('addon_id') or data.get('addonId') or data.get('id')),
            name=data.get('name') or data.get('addonName') or '',
            unit_price=to_decimal(data.get('unit_price', data.get('price')), 'addon price'),
            quantity=quantity,
        )


@dataclass(frozen=True)
class LineItem:
    """
    One cart line.

    Lines sharing a bundle_group_id belong to the same automatic bundle.
    The bundle_* metadata is cached from the promotion when the bundle
    was added.
    """
    line_id: str
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    kind: ItemKind = ItemKind.PRODUCT
    category: Optional[str] = None
    addons: Tuple[Addon, ...] = ()
    is_from_bundle: bool = False
    bundle_group_id: Optional[BundleGroupId] = None
    bundle_promotion_id: Optional[str] = None
    bundle_promotion_name: Optional[str] = None
    bundle_discount_type: Optional[str] = None
    bundle_discount_value: Optional[Decimal] = None

    @property
    def addon_unit_cost(self) -> Decimal:
        """Addon cost carried by one unit of this line."""
        return sum((addon.cost_per_unit for addon in self.addons), ZERO)

    @property
    def line_subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def is_product(self) -> bool:
        return self.kind == ItemKind.PRODUCT

    def with_quantity(self, quantity: int) -> 'LineItem':
        return replace(self, quantity=quantity)

    def to_dict(self):
        return {
            'line_id': self.line_id,
            'product_id': self.product_id,
            'name': self.name,
            'unit_price': str(self.unit_price),
            'quantity': self.quantity,
            'kind': self.kind.value,
            'category': self.category,
            'addons': [addon.to_dict() for addon in self.addons],
            'is_from_bundle': self.is_from_bundle,
            'bundle_group_id': str(self.bundle_group_id) if self.bundle_group_id else None,
            'bundle_promotion_id': self.bundle_promotion_id,
            'bundle_promotion_name': self.bundle_promotion_name,
            'bundle_discount_type': self.bundle_discount_type,
            'bundle_discount_value': (
                str(self.bundle_discount_value) if self.bundle_discount_value is not None else None
            ),
        }


def new_line_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class CartSnapshot:
    """
    Immutable view of a cart at one version.

    Every mutation produces a new snapshot with version + 1; callers send
    back the version they read so concurrent writes can be detected.
    """
    cart_id: str
    version: int = 0
    items: Tuple[LineItem, ...] = ()
    applied_discounts: tuple = ()

    def item(self, index: int) -> LineItem:
        if index < 0 or index >= len(self.items):
            raise NotFoundError(f'Cart {self.cart_id} has no item at position {index}')
        return self.items[index]

    def to_dict(self):
        return {
            'cart_id': self.cart_id,
            'version': self.version,
            'items': [item.to_dict() for item in self.items],
            'applied_discounts': [applied.to_dict() for applied in self.applied_discounts],
        }
