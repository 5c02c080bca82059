"""Models package - exports persistence models and pricing data types."""
# Persistence Models
from pos_pricing.models.sale import Sale, SaleStatus
from pos_pricing.models.sale_line import SaleLine, SaleLineAllocation, AllocationKind
from pos_pricing.models.sale_refund import SaleRefund, SaleRefundLine
from pos_pricing.models.promotion_record import PromotionRecord, DiscountRecord

# Pricing Data Types
from pos_pricing.models.cart import Addon, BundleGroupId, CartSnapshot, ItemKind, LineItem, new_line_id
from pos_pricing.models.pricing import (
    AllocationResult, ApplicationScope, AppliedManualDiscount, DiscountDefinition,
    ItemAllocation, ItemPromotionAllocation, PromotionDefinition, PromotionKind,
    per_unit_discount
)

__all__ = [
    # Persistence
    'Sale', 'SaleStatus', 'SaleLine', 'SaleLineAllocation', 'AllocationKind',
    'SaleRefund', 'SaleRefundLine', 'PromotionRecord', 'DiscountRecord',
    # Pricing
    'Addon', 'BundleGroupId', 'CartSnapshot', 'ItemKind', 'LineItem', 'new_line_id',
    'AllocationResult', 'ApplicationScope', 'AppliedManualDiscount', 'DiscountDefinition',
    'ItemAllocation', 'ItemPromotionAllocation', 'PromotionDefinition', 'PromotionKind',
    'per_unit_discount',
]
