"""
Unit tests for the refund allocator.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from conftest import minutes_after
from pos_pricing.exceptions import BusinessLogicError, ExceedsAvailableQuantityError, NotFoundError, WindowExpiredError
from pos_pricing.services.refund_service import (
    LineAllocation, PersistedSale, RefundRecord, RefundState, SoldLine, compute_full_refund,
    compute_refund, refund_state, remaining_quantities, window_expired
)


COMPLETED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def bogo_sale():
    """Three Lattes at 100, one of them half off through B1G1 50%."""
    return PersistedSale(
        sale_id=1,
        completed_at=COMPLETED_AT,
        lines=(
            SoldLine(
                name='Latte', unit_price=Decimal('100'), quantity=3,
                promotions=(LineAllocation('Latte B1G1 50%', 1, Decimal('50')),),
            ),
        ),
        subtotal=Decimal('300'),
        promotional_discount=Decimal('50'),
        total=Decimal('250.00'),
    )


def split_sale():
    """The same item name on two lines: plain, then with an addon and a discount."""
    return PersistedSale(
        sale_id=2,
        completed_at=COMPLETED_AT,
        lines=(
            SoldLine(name='Latte', unit_price=Decimal('100'), quantity=2),
            SoldLine(
                name='Latte', unit_price=Decimal('100'), quantity=1, addon_unit_cost=Decimal('20'),
                discounts=(LineAllocation('Senior 10%', 1, Decimal('12')),),
            ),
            SoldLine(name='Croissant', unit_price=Decimal('60'), quantity=1),
        ),
    )


class TestFullRefund:
    """Tests for compute_full_refund."""

    def test_full_refund_pays_back_the_total(self):
        quote = compute_full_refund(bogo_sale(), [], minutes_after(COMPLETED_AT, 5))

        assert quote.amount == Decimal('250.00')
        assert quote.is_full is True
        assert quote.quantities() == {'Latte': 3}

    def test_nothing_left_after_full_refund(self):
        ledger = [RefundRecord('Latte', 3, Decimal('250.00'))]

        with pytest.raises(ExceedsAvailableQuantityError):
            compute_refund(bogo_sale(), ledger, {'Latte': 1}, minutes_after(COMPLETED_AT, 6))
        with pytest.raises(ExceedsAvailableQuantityError):
            compute_full_refund(bogo_sale(), ledger, minutes_after(COMPLETED_AT, 6))

    def test_full_after_partial_pays_the_rest(self):
        now = minutes_after(COMPLETED_AT, 5)
        partial = compute_refund(bogo_sale(), [], {'Latte': 1}, now)
        ledger = [RefundRecord('Latte', 1, partial.amount)]

        rest = compute_full_refund(bogo_sale(), ledger, now)

        assert partial.amount == Decimal('83.33')
        assert rest.amount == Decimal('166.67')
        assert partial.amount + rest.amount == Decimal('250.00')
        assert rest.quantities() == {'Latte': 2}


class TestPartialRefund:
    """Tests for compute_refund."""

    def test_net_price_spreads_line_reductions(self):
        quote = compute_refund(bogo_sale(), [], {'Latte': 2}, minutes_after(COMPLETED_AT, 1))
        assert quote.amount == Decimal('166.67')
        assert quote.is_full is False

    def test_duplicate_names_fill_lines_in_order(self):
        ledger = [RefundRecord('Latte', 2, Decimal('200'))]

        quote = compute_refund(split_sale(), ledger, {'Latte': 1}, minutes_after(COMPLETED_AT, 1))

        assert len(quote.per_item_breakdown) == 1
        line = quote.per_item_breakdown[0]
        assert line.line_position == 1
        assert line.net_unit_price == Decimal('108')
        assert quote.amount == Decimal('108.00')

    def test_request_spanning_two_lines(self):
        quote = compute_refund(split_sale(), [], {'Latte': 3, 'Croissant': 1}, minutes_after(COMPLETED_AT, 1))

        assert [line.line_position for line in quote.per_item_breakdown] == [0, 1, 2]
        assert quote.amount == Decimal('368.00')

    def test_more_than_sold(self):
        with pytest.raises(ExceedsAvailableQuantityError) as exc:
            compute_refund(bogo_sale(), [], {'Latte': 4}, minutes_after(COMPLETED_AT, 1))
        assert exc.value.available == 3

    def test_unknown_item(self):
        with pytest.raises(NotFoundError):
            compute_refund(bogo_sale(), [], {'Mocha': 1}, minutes_after(COMPLETED_AT, 1))

    def test_empty_request(self):
        with pytest.raises(BusinessLogicError):
            compute_refund(bogo_sale(), [], {'Latte': 0}, minutes_after(COMPLETED_AT, 1))


class TestRefundWindow:
    """Tests for the refund eligibility window."""

    def test_expired_after_31_minutes(self):
        with pytest.raises(WindowExpiredError):
            compute_refund(bogo_sale(), [], {'Latte': 1}, minutes_after(COMPLETED_AT, 31))

    def test_window_checked_before_quantities(self):
        with pytest.raises(WindowExpiredError):
            compute_refund(bogo_sale(), [], {'Latte': 99}, minutes_after(COMPLETED_AT, 31))

    def test_window_boundary(self):
        assert window_expired(bogo_sale(), minutes_after(COMPLETED_AT, 29)) is False
        assert window_expired(bogo_sale(), minutes_after(COMPLETED_AT, 30)) is True

    def test_custom_window(self):
        quote = compute_full_refund(
            bogo_sale(), [], minutes_after(COMPLETED_AT, 45), window=timedelta(minutes=60)
        )
        assert quote.amount == Decimal('250.00')

    def test_naive_times_read_as_utc(self):
        naive_now = datetime(2026, 3, 1, 12, 10)
        assert window_expired(bogo_sale(), naive_now) is False


class TestRefundState:
    """Tests for refund_state and remaining_quantities."""

    def test_states(self):
        sale = bogo_sale()
        early = minutes_after(COMPLETED_AT, 1)
        late = minutes_after(COMPLETED_AT, 40)
        partial = [RefundRecord('Latte', 1, Decimal('83.33'))]
        full = [RefundRecord('Latte', 3, Decimal('250.00'))]

        assert refund_state(sale, [], early) == RefundState.OPEN_FOR_REFUND
        assert refund_state(sale, partial, early) == RefundState.PARTIALLY_REFUNDED
        assert refund_state(sale, full, early) == RefundState.FULLY_REFUNDED
        assert refund_state(sale, partial, late) == RefundState.REFUND_EXPIRED
        assert refund_state(sale, full, late) == RefundState.FULLY_REFUNDED

    def test_remaining_quantities(self):
        ledger = [RefundRecord('Latte', 2), RefundRecord('Latte', 1), RefundRecord('Croissant', 1)]
        assert remaining_quantities(split_sale(), ledger) == [0, 0, 0]
        assert remaining_quantities(split_sale(), ledger[:1]) == [0, 1, 1]
