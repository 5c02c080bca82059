"""
Sales service with transactional logic - store-scoped.
Persists a checked-out cart with its full allocation breakdown and reads
it back for refunds.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from pos_pricing.exceptions import BusinessLogicError, NotFoundError
from pos_pricing.models import (
    AllocationKind, AllocationResult, CartSnapshot, Sale, SaleLine, SaleLineAllocation, SaleStatus
)
from pos_pricing.services.refund_service import (
    LineAllocation, PersistedSale, RefundRecord, SoldLine, ensure_utc
)
from pos_pricing.utils.money import ZERO

logger = logging.getLogger(__name__)


def record_sale(session: Session, store_id: int, cart: CartSnapshot, result: AllocationResult,
                idempotency_key: Optional[str] = None, payment_method: str = 'CASH',
                cashier_name: Optional[str] = None, completed_at: Optional[datetime] = None) -> Sale:
    """
    Persist a finalized cart (store-scoped).

    Args:
        session: SQLAlchemy session
        store_id: Store the sale belongs to
        cart: Snapshot being checked out
        result: Allocation computed for exactly this snapshot
        idempotency_key: Client key preventing duplicate sales on double-submit

    Raises:
        BusinessLogicError: Empty cart or key already used
    """
    if not cart.items:
        raise BusinessLogicError('The cart is empty')

    try:
        if idempotency_key:
            existing = session.query(Sale).filter_by(idempotency_key=idempotency_key).first()
            if existing:
                raise BusinessLogicError(f'This sale was already processed (ID: {existing.id})', 409,
                                         {'sale_id': existing.id})

        sale = Sale(
            store_id=store_id,
            cart_id=cart.cart_id,
            cashier_name=cashier_name,
            completed_at=completed_at or datetime.now(timezone.utc),
            status=SaleStatus.COMPLETED,
            payment_method=(payment_method or 'CASH').upper(),
            subtotal=result.subtotal,
            addons_cost=result.addons_cost,
            manual_discount=result.manual_discount,
            promotional_discount=result.promotional_discount,
            total=result.total,
            idempotency_key=idempotency_key,
        )

        for index, item in enumerate(cart.items):
            line = SaleLine(
                position=index,
                product_id=item.product_id,
                name=item.name,
                category=item.category,
                kind=item.kind.value,
                qty=item.quantity,
                unit_price=item.unit_price,
                addon_unit_cost=item.addon_unit_cost,
                addons=[addon.to_dict() for addon in item.addons],
                is_from_bundle=item.is_from_bundle,
                bundle_group_id=str(item.bundle_group_id) if item.bundle_group_id else None,
            )
            for applied in cart.applied_discounts:
                alloc = applied.item_allocations.get(index)
                if alloc and alloc.quantity > 0:
                    line.allocations.append(SaleLineAllocation(
                        kind=AllocationKind.DISCOUNT,
                        source_id=applied.discount.id,
                        name=applied.discount.name,
                        qty=alloc.quantity,
                        amount=alloc.amount,
                    ))
            for promo in result.item_promotions:
                if promo.item_index == index:
                    line.allocations.append(SaleLineAllocation(
                        kind=AllocationKind.PROMOTION,
                        source_id=promo.promotion_id,
                        name=promo.promotion_name,
                        qty=promo.quantity,
                        amount=promo.promotion_amount,
                    ))
            sale.lines.append(line)

        session.add(sale)
        session.commit()
        logger.info(f"[PRICING] Sale #{sale.id} recorded for store {store_id}: total {sale.total}")
        return sale

    except BusinessLogicError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        raise


def get_sale(session: Session, sale_id: int, store_id: int) -> Sale:
    sale = session.query(Sale).filter(
        Sale.id == sale_id,
        Sale.store_id == store_id
    ).first()
    if not sale:
        raise NotFoundError(f'Sale #{sale_id} not found')
    return sale


def to_persisted_sale(sale: Sale) -> PersistedSale:
    """Read a stored sale into the refund allocator's immutable record."""
    lines = []
    for line in sale.lines:
        discounts = tuple(
            LineAllocation(a.name, a.qty, a.amount) for a in line.allocations if a.kind == AllocationKind.DISCOUNT
        )
        promotions = tuple(
            LineAllocation(a.name, a.qty, a.amount) for a in line.allocations if a.kind == AllocationKind.PROMOTION
        )
        lines.append(SoldLine(
            name=line.name,
            unit_price=line.unit_price,
            quantity=line.qty,
            addon_unit_cost=line.addon_unit_cost or ZERO,
            discounts=discounts,
            promotions=promotions,
        ))
    return PersistedSale(
        sale_id=sale.id,
        completed_at=ensure_utc(sale.completed_at),
        lines=tuple(lines),
        subtotal=sale.subtotal,
        addons_cost=sale.addons_cost,
        manual_discount=sale.manual_discount,
        promotional_discount=sale.promotional_discount,
        total=sale.total,
    )


def ledger_of(sale: Sale) -> List[RefundRecord]:
    """Refund ledger rows of a sale, oldest first."""
    return [
        RefundRecord(
            item_name=line.item_name,
            quantity=line.qty,
            amount=line.amount,
            created_at=ensure_utc(refund.created_at) if refund.created_at else None,
        )
        for refund in sale.refunds
        for line in refund.lines
    ]


def sale_to_dict(sale: Sale) -> dict:
    return {
        'id': sale.id,
        'store_id': sale.store_id,
        'cart_id': sale.cart_id,
        'status': sale.status.value,
        'payment_method': sale.payment_method,
        'completed_at': ensure_utc(sale.completed_at).isoformat(),
        'subtotal': str(sale.subtotal),
        'addons_cost': str(sale.addons_cost),
        'manual_discount': str(sale.manual_discount),
        'promotional_discount': str(sale.promotional_discount),
        'total': str(sale.total),
        'lines': [
            {
                'position': line.position,
                'product_id': line.product_id,
                'name': line.name,
                'qty': line.qty,
                'unit_price': str(line.unit_price),
                'addon_unit_cost': str(line.addon_unit_cost),
                'addons': line.addons or [],
                'bundle_group_id': line.bundle_group_id,
                'allocations': [
                    {'kind': a.kind.value, 'name': a.name, 'qty': a.qty, 'amount': str(a.amount)}
                    for a in line.allocations
                ],
            }
            for line in sale.lines
        ],
        'refunds': [
            {
                'id': refund.id,
                'created_at': ensure_utc(refund.created_at).isoformat() if refund.created_at else None,
                'amount': str(refund.amount),
                'is_full': refund.is_full,
                'lines': [{'item_name': l.item_name, 'qty': l.qty, 'amount': str(l.amount)} for l in refund.lines],
            }
            for refund in sale.refunds
        ],
    }
