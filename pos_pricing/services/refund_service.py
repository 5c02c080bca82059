"""
Refund allocator.

Reverses the allocation persisted with a sale: every unit is refunded at
its net price (price plus addons, minus its share of the discounts and
promotions it received at checkout). The ledger of earlier refunds bounds
every new one, and refunds close a fixed window after completion.
"""
import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from pos_pricing.blueprints.metrics import refund_requests_total
from pos_pricing.exceptions import (
    BusinessLogicError, ExceedsAvailableQuantityError, NotFoundError, WindowExpiredError
)
from pos_pricing.models import Sale, SaleRefund, SaleRefundLine, SaleStatus
from pos_pricing.utils.money import ZERO, round2, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(minutes=30)


class RefundState(str, enum.Enum):
    OPEN_FOR_REFUND = 'OPEN_FOR_REFUND'
    PARTIALLY_REFUNDED = 'PARTIALLY_REFUNDED'
    FULLY_REFUNDED = 'FULLY_REFUNDED'
    REFUND_EXPIRED = 'REFUND_EXPIRED'


def ensure_utc(moment: datetime) -> datetime:
    """Naive datetimes are read as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LineAllocation:
    """A discount or promotion slice persisted on a sold line."""
    name: str
    quantity: int
    amount: Decimal

    def to_dict(self):
        return {'name': self.name, 'quantity': self.quantity, 'amount': str(self.amount)}

    @classmethod
    def from_dict(cls, data):
        return cls(name=data['name'], quantity=int(data['quantity']), amount=to_decimal(data['amount'], 'amount'))


@dataclass(frozen=True)
class SoldLine:
    name: str
    unit_price: Decimal
    quantity: int
    addon_unit_cost: Decimal = ZERO
    discounts: Tuple[LineAllocation, ...] = ()
    promotions: Tuple[LineAllocation, ...] = ()

    @property
    def discount_amount(self) -> Decimal:
        return sum((d.amount for d in self.discounts), ZERO)

    @property
    def promotion_amount(self) -> Decimal:
        return sum((p.amount for p in self.promotions), ZERO)

    @property
    def net_unit_price(self) -> Decimal:
        if self.quantity <= 0:
            return ZERO
        return (self.unit_price + self.addon_unit_cost
                - self.discount_amount / self.quantity
                - self.promotion_amount / self.quantity)

    def to_dict(self):
        return {
            'name': self.name,
            'unit_price': str(self.unit_price),
            'quantity': self.quantity,
            'addon_unit_cost': str(self.addon_unit_cost),
            'discounts': [d.to_dict() for d in self.discounts],
            'promotions': [p.to_dict() for p in self.promotions],
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            name=data['name'],
            unit_price=to_decimal(data['unit_price'], 'unit_price'),
            quantity=int(data['quantity']),
            addon_unit_cost=to_decimal(data.get('addon_unit_cost', '0'), 'addon_unit_cost'),
            discounts=tuple(LineAllocation.from_dict(d) for d in data.get('discounts', [])),
            promotions=tuple(LineAllocation.from_dict(p) for p in data.get('promotions', [])),
        )


@dataclass(frozen=True)
class PersistedSale:
    """Immutable record of a completed sale, as the refund allocator reads it."""
    sale_id: int
    completed_at: datetime
    lines: Tuple[SoldLine, ...]
    subtotal: Decimal = ZERO
    addons_cost: Decimal = ZERO
    manual_discount: Decimal = ZERO
    promotional_discount: Decimal = ZERO
    total: Decimal = ZERO

    def to_dict(self):
        return {
            'sale_id': self.sale_id,
            'completed_at': ensure_utc(self.completed_at).isoformat(),
            'lines': [line.to_dict() for line in self.lines],
            'subtotal': str(self.subtotal),
            'addons_cost': str(self.addons_cost),
            'manual_discount': str(self.manual_discount),
            'promotional_discount': str(self.promotional_discount),
            'total': str(self.total),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            sale_id=data['sale_id'],
            completed_at=ensure_utc(datetime.fromisoformat(data['completed_at'])),
            lines=tuple(SoldLine.from_dict(line) for line in data['lines']),
            subtotal=to_decimal(data.get('subtotal', '0')),
            addons_cost=to_decimal(data.get('addons_cost', '0')),
            manual_discount=to_decimal(data.get('manual_discount', '0')),
            promotional_discount=to_decimal(data.get('promotional_discount', '0')),
            total=to_decimal(data.get('total', '0')),
        )


@dataclass(frozen=True)
class RefundRecord:
    """One ledger row: units of an item already refunded."""
    item_name: str
    quantity: int
    amount: Decimal = ZERO
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class RefundLineQuote:
    item_name: str
    line_position: int
    quantity: int
    net_unit_price: Decimal
    amount: Decimal

    def to_dict(self):
        return {
            'item_name': self.item_name,
            'line_position': self.line_position,
            'quantity': self.quantity,
            'net_unit_price': str(self.net_unit_price),
            'amount': str(self.amount),
        }


@dataclass(frozen=True)
class RefundQuote:
    sale_id: int
    amount: Decimal
    per_item_breakdown: Tuple[RefundLineQuote, ...]
    is_full: bool = False

    def quantities(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for line in self.per_item_breakdown:
            totals[line.item_name] = totals.get(line.item_name, 0) + line.quantity
        return totals

    def to_dict(self):
        return {
            'sale_id': self.sale_id,
            'amount': str(self.amount),
            'is_full': self.is_full,
            'per_item_breakdown': [line.to_dict() for line in self.per_item_breakdown],
        }


def refunded_quantities(ledger: Sequence[RefundRecord]) -> Dict[str, int]:
    totals: Dict[str, int] = {}
    for record in ledger:
        totals[record.item_name] = totals.get(record.item_name, 0) + record.quantity
    return totals


def remaining_quantities(order: PersistedSale, ledger: Sequence[RefundRecord]) -> List[int]:
    """
    Refundable units per sold line.

    The ledger is kept by item name; refunded units fill lines sharing a
    name in sale order.
    """
    refunded = refunded_quantities(ledger)
    remaining = []
    for line in order.lines:
        taken = min(line.quantity, refunded.get(line.name, 0))
        refunded[line.name] = refunded.get(line.name, 0) - taken
        remaining.append(line.quantity - taken)
    return remaining


def window_expired(order: PersistedSale, now: datetime, window: timedelta = DEFAULT_WINDOW) -> bool:
    return ensure_utc(now) - ensure_utc(order.completed_at) >= window


def refund_state(order: PersistedSale, ledger: Sequence[RefundRecord], now: Optional[datetime] = None,
                 window: timedelta = DEFAULT_WINDOW) -> RefundState:
    """Fully refunded sales stay so after the window closes."""
    now = now or utcnow()
    remaining = remaining_quantities(order, ledger)
    if order.lines and not any(remaining):
        return RefundState.FULLY_REFUNDED
    if window_expired(order, now, window):
        return RefundState.REFUND_EXPIRED
    if any(record.quantity > 0 for record in ledger):
        return RefundState.PARTIALLY_REFUNDED
    return RefundState.OPEN_FOR_REFUND


def _check_window(order: PersistedSale, now: datetime, window: timedelta):
    if window_expired(order, now, window):
        raise WindowExpiredError(order.sale_id, ensure_utc(order.completed_at), int(window.total_seconds() // 60))


def compute_refund(order: PersistedSale, ledger: Sequence[RefundRecord], requested_quantities: Mapping[str, int],
                   now: Optional[datetime] = None, window: timedelta = DEFAULT_WINDOW) -> RefundQuote:
    """
    Quote a partial refund.

    Args:
        order: The persisted sale
        ledger: Refunds already accepted for it
        requested_quantities: {item_name: units}
        now: Evaluation time, defaults to now (UTC)
        window: Refund eligibility window

    Raises:
        WindowExpiredError: The window closed, whatever the quantities
        NotFoundError: An item name is not part of the sale
        ExceedsAvailableQuantityError: More units than remain refundable
    """
    now = now or utcnow()
    _check_window(order, now, window)

    requested = {name: int(qty) for name, qty in requested_quantities.items() if int(qty) != 0}
    if not requested:
        raise BusinessLogicError('Select at least one item to refund')
    if any(qty < 0 for qty in requested.values()):
        raise BusinessLogicError('Refund quantities must be positive')

    remaining = remaining_quantities(order, ledger)
    sold_names = {line.name for line in order.lines}
    for name, qty in requested.items():
        if name not in sold_names:
            raise NotFoundError(f'{name} is not part of sale #{order.sale_id}')
        available = sum(r for line, r in zip(order.lines, remaining) if line.name == name)
        if qty > available:
            raise ExceedsAvailableQuantityError(name, qty, available)

    breakdown = []
    total = ZERO
    for position, (line, left) in enumerate(zip(order.lines, remaining)):
        wanted = requested.get(line.name, 0)
        take = min(wanted, left)
        if take <= 0:
            continue
        requested[line.name] = wanted - take
        net = line.net_unit_price
        amount = net * take
        total += amount
        breakdown.append(RefundLineQuote(line.name, position, take, net, amount))

    return RefundQuote(sale_id=order.sale_id, amount=round2(total), per_item_breakdown=tuple(breakdown))


def compute_full_refund(order: PersistedSale, ledger: Sequence[RefundRecord], now: Optional[datetime] = None,
                        window: timedelta = DEFAULT_WINDOW) -> RefundQuote:
    """
    Quote a refund of everything still refundable.

    The amount is the net value of the whole sale minus what earlier
    refunds already paid back.
    """
    now = now or utcnow()
    _check_window(order, now, window)

    remaining = remaining_quantities(order, ledger)
    if order.lines and not any(remaining):
        first = order.lines[0]
        raise ExceedsAvailableQuantityError(first.name, first.quantity, 0)

    breakdown = []
    for position, (line, left) in enumerate(zip(order.lines, remaining)):
        if left > 0:
            net = line.net_unit_price
            breakdown.append(RefundLineQuote(line.name, position, left, net, net * left))

    gross = round2(sum((line.net_unit_price * line.quantity for line in order.lines), ZERO))
    already = sum((record.amount for record in ledger), ZERO)
    amount = max(ZERO, round2(gross - already))
    return RefundQuote(sale_id=order.sale_id, amount=amount, per_item_breakdown=tuple(breakdown), is_full=True)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def window_from_config(config) -> timedelta:
    return timedelta(minutes=int(config.get('REFUND_WINDOW_MINUTES', 30)))


_SALE_LOCKS = tuple(threading.Lock() for _ in range(64))


def _sale_lock(sale_id) -> threading.Lock:
    return _SALE_LOCKS[hash(sale_id) % len(_SALE_LOCKS)]


def submit_refund(session: Session, sale_id: int, store_id: int,
                  requested_quantities: Optional[Mapping[str, int]] = None,
                  now: Optional[datetime] = None, window: timedelta = DEFAULT_WINDOW,
                  reason: Optional[str] = None) -> Tuple[SaleRefund, RefundQuote]:
    """
    Accept a refund atomically (store-scoped).

    The sale row is locked, the quote is computed against the ledger as it
    stands inside the transaction, and the refund is appended before the
    lock is released. Within one process refunds of a sale also serialize
    on an in-memory lock, which covers databases without row locks
    (SQLite). A None request refunds everything left.

    Raises:
        NotFoundError, WindowExpiredError, ExceedsAvailableQuantityError,
        BusinessLogicError
    """
    with _sale_lock(sale_id):
        return _submit_refund(session, sale_id, store_id, requested_quantities, now, window, reason)


def _submit_refund(session, sale_id, store_id, requested_quantities, now, window, reason):
    from pos_pricing.services.sales_service import ledger_of, to_persisted_sale

    now = now or utcnow()
    try:
        sale = session.query(Sale).filter(
            Sale.id == sale_id,
            Sale.store_id == store_id
        ).with_for_update().first()
        if not sale:
            raise NotFoundError(f'Sale #{sale_id} not found')

        order = to_persisted_sale(sale)
        ledger = ledger_of(sale)

        try:
            if requested_quantities is None:
                quote = compute_full_refund(order, ledger, now, window)
            else:
                quote = compute_refund(order, ledger, requested_quantities, now, window)
        except WindowExpiredError:
            if sale.status in (SaleStatus.COMPLETED, SaleStatus.PARTIALLY_REFUNDED):
                sale.status = SaleStatus.REFUND_EXPIRED
                session.commit()
            refund_requests_total.labels(outcome='window_expired').inc()
            logger.info(f"[REFUND] Sale #{sale_id}: window expired")
            raise

        refund = SaleRefund(sale_id=sale.id, created_at=now, amount=quote.amount, is_full=quote.is_full, reason=reason)
        per_item: Dict[str, tuple] = {}
        for line in quote.per_item_breakdown:
            qty, amount = per_item.get(line.item_name, (0, ZERO))
            per_item[line.item_name] = (qty + line.quantity, amount + line.amount)
        # Ledger lines add up to the amount actually paid back
        if per_item:
            last = list(per_item)[-1]
            drift = quote.amount - sum((amount for _, amount in per_item.values()), ZERO)
            per_item[last] = (per_item[last][0], per_item[last][1] + drift)
        for item_name, (qty, amount) in per_item.items():
            refund.lines.append(SaleRefundLine(item_name=item_name, qty=qty, amount=amount))
        sale.refunds.append(refund)

        new_ledger = list(ledger) + [
            RefundRecord(name, qty, amount, now) for name, (qty, amount) in per_item.items()
        ]
        if not any(remaining_quantities(order, new_ledger)):
            sale.status = SaleStatus.REFUNDED
        else:
            sale.status = SaleStatus.PARTIALLY_REFUNDED

        session.commit()
        refund_requests_total.labels(outcome='accepted').inc()
        logger.info(f"[REFUND] Sale #{sale_id}: refunded {quote.amount} ({sale.status.value})")
        return refund, quote

    except WindowExpiredError:
        raise
    except (BusinessLogicError, NotFoundError):
        session.rollback()
        refund_requests_total.labels(outcome='rejected').inc()
        raise
    except Exception:
        session.rollback()
        raise


def sweep_expired_sales(session: Session, now: Optional[datetime] = None,
                        window: timedelta = DEFAULT_WINDOW, store_id: Optional[int] = None) -> int:
    """Move sales whose refund window elapsed to REFUND_EXPIRED."""
    now = now or utcnow()
    query = session.query(Sale).filter(
        Sale.status.in_([SaleStatus.COMPLETED, SaleStatus.PARTIALLY_REFUNDED])
    )
    if store_id is not None:
        query = query.filter(Sale.store_id == store_id)

    expired = 0
    try:
        for sale in query.all():
            if ensure_utc(now) - ensure_utc(sale.completed_at) >= window:
                sale.status = SaleStatus.REFUND_EXPIRED
                expired += 1
        session.commit()
    except Exception:
        session.rollback()
        raise

    if expired:
        logger.info(f"[REFUND] {expired} sale(s) moved to REFUND_EXPIRED")
    return expired
