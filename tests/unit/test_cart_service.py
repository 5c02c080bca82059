"""
Unit tests for the cart reducer and the live cart store.
"""

import threading
import time

import pytest
from decimal import Decimal

from pos_pricing.exceptions import (
    BusinessLogicError, NotFoundError, QuantityConflictError, StaleCartError
)
from pos_pricing.models import (
    Addon, BundleGroupId, CartSnapshot, DiscountDefinition, ItemKind, PromotionDefinition, PromotionKind
)
from pos_pricing.services.cart_service import (
    AddBundle, AddItem, ApplyDiscount, CartStore, ClearCart, ProductRef, RemoveBundle,
    RemoveDiscount, RemoveItem, SetAddons, SetQuantity, quantity_increase, reduce_cart
)


SENIOR = DiscountDefinition(id='d1', name='Senior 10%', kind=PromotionKind.PERCENTAGE, value=Decimal('10'))

DONUT_COFFEE = PromotionDefinition(
    id='2', name='Buy 2 Donuts get a Coffee', kind=PromotionKind.BUNDLE,
    target_names=('Donut', 'Coffee'), buy_quantity=2, get_quantity=1,
    bundle_discount_type='percentage', bundle_discount_value=Decimal('100'),
)
BUNDLE_PRODUCTS = (
    ProductRef(product_id='p-donut', name='Donut', unit_price=Decimal('50')),
    ProductRef(product_id='p-coffee', name='Coffee', unit_price=Decimal('80')),
)
SHOT = Addon(addon_id='a1', name='Extra shot', unit_price=Decimal('20'))
N_THREADS = 16


def latte(quantity=1, **kwargs):
    return AddItem(product_id='p-latte', name='Latte', unit_price=Decimal('100'), quantity=quantity, **kwargs)


def mocha(quantity=1):
    return AddItem(product_id='p-mocha', name='Mocha', unit_price=Decimal('120'), quantity=quantity)


def cart_with(*actions):
    cart = CartSnapshot(cart_id='c1')
    for action in actions:
        cart = reduce_cart(cart, action)
    return cart


class TestAddItem:
    """Tests for adding lines."""

    def test_version_increments(self):
        cart = cart_with(latte())
        assert cart.version == 1
        assert len(cart.items) == 1

    def test_same_product_merges(self):
        cart = cart_with(latte(), latte(2))
        assert len(cart.items) == 1
        assert cart.items[0].quantity == 3
        assert cart.version == 2

    def test_line_with_addons_stays_separate(self):
        cart = cart_with(latte(), latte(addons=(SHOT,)))
        assert len(cart.items) == 2
        assert cart.items[1].addon_unit_cost == Decimal('20')

    def test_merchandise_does_not_merge_with_product(self):
        cart = cart_with(latte(), latte(kind=ItemKind.MERCHANDISE))
        assert len(cart.items) == 2

    def test_invalid_quantity(self):
        with pytest.raises(BusinessLogicError):
            cart_with(latte(0))

    def test_input_snapshot_untouched(self):
        cart = cart_with(latte())
        reduce_cart(cart, latte())
        assert cart.items[0].quantity == 1
        assert cart.version == 1


class TestQuantityAndRemoval:
    """Tests for SetQuantity / RemoveItem and discount reindexing."""

    def test_set_quantity(self):
        cart = cart_with(latte())
        cart = reduce_cart(cart, SetQuantity(cart.items[0].line_id, 4))
        assert cart.items[0].quantity == 4

    def test_set_quantity_zero_removes(self):
        cart = cart_with(latte(), mocha())
        cart = reduce_cart(cart, SetQuantity(cart.items[0].line_id, 0))
        assert [item.name for item in cart.items] == ['Mocha']

    def test_unknown_line(self):
        cart = cart_with(latte())
        with pytest.raises(NotFoundError):
            reduce_cart(cart, RemoveItem('missing'))

    def test_cannot_drop_below_discounted_units(self):
        cart = cart_with(latte(3))
        cart = reduce_cart(cart, ApplyDiscount(SENIOR, {0: 2}))
        with pytest.raises(BusinessLogicError):
            reduce_cart(cart, SetQuantity(cart.items[0].line_id, 1))

    def test_discount_follows_its_line(self):
        cart = cart_with(latte(), mocha(2))
        cart = reduce_cart(cart, ApplyDiscount(SENIOR, {1: 1}))

        cart = reduce_cart(cart, RemoveItem(cart.items[0].line_id))

        assert cart.items[0].name == 'Mocha'
        assert cart.applied_discounts[0].quantity_for(0) == 1

    def test_discount_dropped_with_its_line(self):
        cart = cart_with(latte(), mocha(2))
        cart = reduce_cart(cart, ApplyDiscount(SENIOR, {1: 1}))

        cart = reduce_cart(cart, RemoveItem(cart.items[1].line_id))

        assert cart.applied_discounts == ()

    def test_clear(self):
        cart = cart_with(latte(), mocha())
        cart = reduce_cart(cart, ApplyDiscount(SENIOR, {0: 1}))
        cart = reduce_cart(cart, ClearCart())
        assert cart.items == ()
        assert cart.applied_discounts == ()


class TestAddons:
    """Tests for SetAddons."""

    def test_whole_line(self):
        cart = cart_with(latte(2))
        cart = reduce_cart(cart, SetAddons(cart.items[0].line_id, (SHOT,)))
        assert cart.items[0].addons == (SHOT,)

    def test_single_unit_split_into_own_line(self):
        cart = cart_with(latte(3), mocha())
        original = cart.items[0]

        cart = reduce_cart(cart, SetAddons(original.line_id, (SHOT,), instance_index=1))

        assert [item.quantity for item in cart.items] == [2, 1, 1]
        assert cart.items[0].line_id == original.line_id
        assert cart.items[1].addons == (SHOT,)
        assert cart.items[2].name == 'Mocha'

    def test_unknown_unit(self):
        cart = cart_with(latte(2))
        with pytest.raises(NotFoundError):
            reduce_cart(cart, SetAddons(cart.items[0].line_id, (SHOT,), instance_index=2))

    def test_bundle_unit_split_keeps_group(self):
        cart = cart_with(AddBundle(DONUT_COFFEE, BUNDLE_PRODUCTS))
        donut = cart.items[0]

        cart = reduce_cart(cart, SetAddons(donut.line_id, (SHOT,), instance_index=1))

        assert [item.quantity for item in cart.items] == [1, 1, 1]
        assert cart.items[1].bundle_group_id == donut.bundle_group_id
        assert cart.items[1].addons == (SHOT,)

    def test_discounted_line_is_locked(self):
        cart = cart_with(latte(2))
        cart = reduce_cart(cart, ApplyDiscount(SENIOR, {0: 1}))
        with pytest.raises(BusinessLogicError):
            reduce_cart(cart, SetAddons(cart.items[0].line_id, (SHOT,)))


class TestBundles:
    """Tests for AddBundle / RemoveBundle."""

    def test_add_two_sets(self):
        cart = cart_with(AddBundle(DONUT_COFFEE, BUNDLE_PRODUCTS, sets=2))

        donut, coffee = cart.items
        assert (donut.name, donut.quantity) == ('Donut', 4)
        assert (coffee.name, coffee.quantity) == ('Coffee', 2)
        assert donut.bundle_group_id == coffee.bundle_group_id
        assert donut.bundle_promotion_id == '2'

    def test_each_add_gets_its_own_group(self):
        cart = cart_with(
            AddBundle(DONUT_COFFEE, BUNDLE_PRODUCTS),
            AddBundle(DONUT_COFFEE, BUNDLE_PRODUCTS),
        )
        assert cart.items[0].bundle_group_id != cart.items[2].bundle_group_id

    def test_missing_product(self):
        with pytest.raises(BusinessLogicError):
            cart_with(AddBundle(DONUT_COFFEE, BUNDLE_PRODUCTS[:1]))

    def test_remove_one_set(self):
        cart = cart_with(AddBundle(DONUT_COFFEE, BUNDLE_PRODUCTS, sets=2))
        group_id = cart.items[0].bundle_group_id

        cart = reduce_cart(cart, RemoveBundle(group_id, DONUT_COFFEE))

        assert [item.quantity for item in cart.items] == [2, 1]

    def test_remove_unknown_group(self):
        cart = cart_with(latte())
        with pytest.raises(NotFoundError):
            reduce_cart(cart, RemoveBundle(BundleGroupId('bundle-2-missing')))

    def test_remove_whole_group(self):
        cart = cart_with(latte(), AddBundle(DONUT_COFFEE, BUNDLE_PRODUCTS, sets=2))
        cart = reduce_cart(cart, RemoveBundle(cart.items[1].bundle_group_id))
        assert [item.name for item in cart.items] == ['Latte']


class TestDiscountActions:
    """Tests for ApplyDiscount / RemoveDiscount."""

    def test_apply_and_remove(self):
        cart = cart_with(latte(2), ApplyDiscount(SENIOR, {0: 1}))
        assert cart.applied_discounts[0].amount == Decimal('10')

        cart = reduce_cart(cart, RemoveDiscount('d1'))
        assert cart.applied_discounts == ()


class TestQuantityIncrease:
    """Tests for quantity_increase."""

    def test_new_product(self):
        before = cart_with(latte())
        after = reduce_cart(before, mocha())
        assert quantity_increase(before, after) == (True, 'p-mocha')

    def test_existing_product_raised(self):
        before = cart_with(latte())
        after = reduce_cart(before, latte())
        assert quantity_increase(before, after) == (True, None)

    def test_decrease(self):
        before = cart_with(latte(2))
        after = reduce_cart(before, SetQuantity(before.items[0].line_id, 1))
        assert quantity_increase(before, after) == (False, None)


class TestCartStore:
    """Tests for the live cart store."""

    def test_dispatch_and_get(self):
        store = CartStore()
        cart = store.create(1, 'c1')

        updated = store.dispatch('c1', latte(), expected_version=cart.version)

        assert updated.version == 1
        assert store.get('c1').items[0].name == 'Latte'

    def test_stale_version_rejected(self):
        store = CartStore()
        store.create(1, 'c1')
        store.dispatch('c1', latte())

        with pytest.raises(StaleCartError) as exc:
            store.dispatch('c1', mocha(), expected_version=0)

        assert exc.value.status_code == 409
        assert store.get('c1').version == 1

    def test_duplicate_cart_id(self):
        store = CartStore()
        store.create(1, 'c1')
        with pytest.raises(BusinessLogicError):
            store.create(1, 'c1')

    def test_other_store_cannot_see_cart(self):
        store = CartStore()
        store.create(1, 'c1')
        with pytest.raises(NotFoundError):
            store.get('c1', store_id=2)

    def test_inventory_veto_keeps_snapshot(self):
        store = CartStore()
        store.create(1, 'c1')
        calls = []

        def veto(items, new_product_id):
            calls.append(new_product_id)
            raise QuantityConflictError('Not enough stock: Latte')

        with pytest.raises(QuantityConflictError):
            store.dispatch('c1', latte(), inventory_check=veto)

        assert calls == ['p-latte']
        assert store.get('c1').version == 0

    def test_inventory_not_called_on_decrease(self):
        store = CartStore()
        store.create(1, 'c1')
        cart = store.dispatch('c1', latte(2))

        def veto(items, new_product_id):
            raise AssertionError('inventory should not be consulted')

        store.dispatch('c1', SetQuantity(cart.items[0].line_id, 1), inventory_check=veto)
        assert store.get('c1').items[0].quantity == 1

    def test_pricing_cached_per_version(self):
        store = CartStore()
        store.create(1, 'c1')
        store.dispatch('c1', latte(2))

        _, first = store.pricing('c1', [])
        _, second = store.pricing('c1', [])
        assert first is second

        store.dispatch('c1', mocha())
        snapshot, third = store.pricing('c1', [])
        assert third is not first
        assert third.subtotal == Decimal('320')
        assert snapshot.version == 2

    def test_discard(self):
        store = CartStore()
        store.create(1, 'c1')
        store.discard('c1')
        with pytest.raises(NotFoundError):
            store.get('c1')

    def test_concurrent_dispatches_serialize(self):
        store = CartStore()
        store.create(1, 'c1')
        start = threading.Barrier(N_THREADS)
        errors = []

        def add_one():
            start.wait()
            try:
                store.dispatch('c1', latte())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=add_one) for _ in range(N_THREADS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        cart = store.get('c1')
        assert errors == []
        assert cart.version == N_THREADS
        assert [item.quantity for item in cart.items] == [N_THREADS]


class TestCartStoreCheckout:
    """Tests for CartStore.checkout."""

    def test_persists_and_closes(self):
        store = CartStore()
        store.create(1, 'c1')
        store.dispatch('c1', latte(2))

        sale = store.checkout('c1', [], lambda snapshot, result: (snapshot.version, result.total))

        assert sale == (1, Decimal('200.00'))
        with pytest.raises(NotFoundError):
            store.get('c1')
        with pytest.raises(NotFoundError):
            store.dispatch('c1', mocha())

    def test_failed_persist_keeps_cart(self):
        store = CartStore()
        store.create(1, 'c1')
        store.dispatch('c1', latte())

        def persist(snapshot, result):
            raise BusinessLogicError('Duplicate idempotency key', 409)

        with pytest.raises(BusinessLogicError):
            store.checkout('c1', [], persist)

        assert store.get('c1').version == 1

    def test_stale_version(self):
        store = CartStore()
        store.create(1, 'c1')
        store.dispatch('c1', latte())

        with pytest.raises(StaleCartError):
            store.checkout('c1', [], lambda snapshot, result: None, expected_version=0)

    def test_concurrent_checkouts_persist_once(self):
        store = CartStore()
        store.create(1, 'c1')
        store.dispatch('c1', latte())
        start = threading.Barrier(2)
        persisted, outcomes = [], []

        def persist(snapshot, result):
            persisted.append(snapshot.version)
            time.sleep(0.05)
            return 'sale'

        def run():
            start.wait()
            try:
                outcomes.append(store.checkout('c1', [], persist))
            except NotFoundError:
                outcomes.append('gone')

        threads = [threading.Thread(target=run) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert persisted == [1]
        assert sorted(outcomes) == ['gone', 'sale']

    def test_mutation_after_checkout_is_rejected(self):
        store = CartStore()
        store.create(1, 'c1')
        store.dispatch('c1', latte())
        in_persist = threading.Event()
        release = threading.Event()
        outcome = []

        def persist(snapshot, result):
            in_persist.set()
            release.wait(1)
            return 'sale'

        def mutate():
            in_persist.wait(1)
            try:
                store.dispatch('c1', mocha())
                outcome.append('applied')
            except NotFoundError:
                outcome.append('gone')

        checkout = threading.Thread(target=store.checkout, args=('c1', [], persist))
        mutation = threading.Thread(target=mutate)
        checkout.start()
        mutation.start()
        in_persist.wait(1)
        time.sleep(0.05)
        release.set()
        checkout.join()
        mutation.join()

        assert outcome == ['gone']


class TestIdleSweep:
    """Tests for CartStore.sweep_idle."""

    def test_idle_carts_dropped(self):
        store = CartStore(idle_ttl=60)
        store.create(1, 'old')

        assert store.sweep_idle(now=time.monotonic() + 61) == 1
        with pytest.raises(NotFoundError):
            store.get('old')

    def test_recent_activity_keeps_cart(self):
        store = CartStore(idle_ttl=60)
        store.create(1, 'c1')
        store.dispatch('c1', latte())

        assert store.sweep_idle(now=time.monotonic() + 30) == 0
        assert store.get('c1').version == 1

    def test_no_ttl_keeps_everything(self):
        store = CartStore()
        store.create(1, 'c1')
        assert store.sweep_idle(now=time.monotonic() + 10 ** 6) == 0
