"""
Integration tests for the carts blueprint.
"""

import json


def _json(response):
    return json.loads(response.data)


def _open_cart(client, headers):
    response = client.post('/carts', json={}, headers=headers)
    assert response.status_code == 201
    return _json(response)['cart']['cart_id']


def _add(client, headers, cart_id, **item):
    return client.post(f'/carts/{cart_id}/items', json=item, headers=headers)


class TestCartLifecycle:
    """Opening, reading and discarding carts."""

    def test_store_header_required(self, client, session):
        response = client.post('/carts', json={})
        assert response.status_code == 400
        assert _json(response)['status'] == 'error'

    def test_open_empty_cart(self, client, session, headers):
        response = client.post('/carts', json={}, headers=headers)
        data = _json(response)

        assert response.status_code == 201
        assert data['cart']['version'] == 0
        assert data['pricing']['total'] == '0.00'

    def test_cart_invisible_to_other_store(self, client, session, headers):
        cart_id = _open_cart(client, headers)
        response = client.get(f'/carts/{cart_id}', headers={'X-Store-Id': '2'})
        assert response.status_code == 404

    def test_discard(self, client, session, headers):
        cart_id = _open_cart(client, headers)
        assert client.delete(f'/carts/{cart_id}', headers=headers).status_code == 200
        assert client.get(f'/carts/{cart_id}', headers=headers).status_code == 404


class TestCartPricing:
    """Mutations return the recomputed allocation."""

    def test_category_promotion_applies(self, client, session, headers, percentage_record):
        cart_id = _open_cart(client, headers)

        response = _add(client, headers, cart_id, product_id='p-croissant', name='Croissant',
                        unit_price='60', quantity=2, category='Pastry')
        data = _json(response)

        assert response.status_code == 200
        assert data['cart']['version'] == 1
        assert data['pricing']['subtotal'] == '120.00'
        assert data['pricing']['promotional_discount'] == '24.00'
        assert data['pricing']['total'] == '96.00'

    def test_add_bundle(self, client, session, headers, bogo_record):
        promotion_id = bogo_record.id
        cart_id = _open_cart(client, headers)

        response = client.post(f'/carts/{cart_id}/bundles', json={
            'promotion_id': promotion_id,
            'products': [{'product_id': 'p-latte', 'name': 'Latte', 'unit_price': '100'}],
        }, headers=headers)
        data = _json(response)

        assert response.status_code == 200
        assert data['cart']['items'][0]['quantity'] == 2
        assert data['cart']['items'][0]['is_from_bundle'] is True
        assert data['pricing']['promotional_discount'] == '50.00'
        assert data['pricing']['total'] == '150.00'

    def test_unknown_bundle_promotion(self, client, session, headers):
        cart_id = _open_cart(client, headers)
        response = client.post(f'/carts/{cart_id}/bundles', json={'promotion_id': 404, 'products': []},
                               headers=headers)
        assert response.status_code == 404

    def test_stale_version_conflict(self, client, session, headers):
        cart_id = _open_cart(client, headers)
        data = _json(_add(client, headers, cart_id, product_id='p-latte', name='Latte', unit_price='100'))
        line_id = data['cart']['items'][0]['line_id']

        response = client.patch(f'/carts/{cart_id}/items/{line_id}', json={'quantity': 3, 'expected_version': 0},
                                headers=headers)

        assert response.status_code == 409
        assert _json(response)['error'] == 'StaleCart'
        assert _json(response)['current_version'] == 1

    def test_invalid_price(self, client, session, headers):
        cart_id = _open_cart(client, headers)
        response = _add(client, headers, cart_id, product_id='p-latte', name='Latte', unit_price='abc')
        assert response.status_code == 400

    def test_split_unit_addons(self, client, session, headers):
        cart_id = _open_cart(client, headers)
        data = _json(_add(client, headers, cart_id, product_id='p-latte', name='Latte', unit_price='100', quantity=2))
        line_id = data['cart']['items'][0]['line_id']

        response = client.put(f'/carts/{cart_id}/items/{line_id}/addons', json={
            'instance_index': 1,
            'addons': [{'addon_id': 'a1', 'name': 'Extra shot', 'unit_price': '20'}],
        }, headers=headers)
        data = _json(response)

        assert [item['quantity'] for item in data['cart']['items']] == [1, 1]
        assert data['pricing']['addons_cost'] == '20.00'
        assert data['pricing']['total'] == '220.00'


class TestManualDiscounts:
    """Applying and removing manual discounts."""

    def test_apply_and_remove(self, client, session, headers, discount_record):
        discount_id = str(discount_record.id)
        cart_id = _open_cart(client, headers)
        _add(client, headers, cart_id, product_id='p-latte', name='Latte', unit_price='100', quantity=2)

        response = client.post(f'/carts/{cart_id}/discounts', json={
            'discount_id': discount_id, 'selected_quantities': {'0': 1},
        }, headers=headers)
        data = _json(response)
        assert response.status_code == 200
        assert data['pricing']['manual_discount'] == '10.00'
        assert data['pricing']['total'] == '190.00'

        eligible = _json(client.get(f'/carts/{cart_id}/discounts/eligible', headers=headers))
        assert eligible['discounts'][0]['is_applied'] is True

        response = client.delete(f'/carts/{cart_id}/discounts/{discount_id}', headers=headers)
        assert _json(response)['pricing']['manual_discount'] == '0.00'

    def test_more_units_than_in_cart(self, client, session, headers, discount_record):
        discount_id = str(discount_record.id)
        cart_id = _open_cart(client, headers)
        _add(client, headers, cart_id, product_id='p-latte', name='Latte', unit_price='100', quantity=2)

        response = client.post(f'/carts/{cart_id}/discounts', json={
            'discount_id': discount_id, 'selected_quantities': {'0': 5},
        }, headers=headers)

        assert response.status_code == 409
        assert _json(response)['error'] == 'InsufficientUndiscountedQuantity'


class TestCheckout:
    """Checkout persists the sale and closes the cart."""

    def test_checkout(self, client, session, headers):
        cart_id = _open_cart(client, headers)
        _add(client, headers, cart_id, product_id='p-latte', name='Latte', unit_price='100', quantity=2)

        response = client.post(f'/carts/{cart_id}/checkout', json={'idempotency_key': 'chk-1'}, headers=headers)
        data = _json(response)

        assert response.status_code == 201
        assert data['sale']['total'] == '200.00'
        assert data['sale']['status'] == 'COMPLETED'
        assert client.get(f'/carts/{cart_id}', headers=headers).status_code == 404

    def test_duplicate_idempotency_key_keeps_cart(self, client, session, headers):
        first = _open_cart(client, headers)
        _add(client, headers, first, product_id='p-latte', name='Latte', unit_price='100')
        client.post(f'/carts/{first}/checkout', json={'idempotency_key': 'chk-2'}, headers=headers)

        second = _open_cart(client, headers)
        _add(client, headers, second, product_id='p-mocha', name='Mocha', unit_price='120')
        response = client.post(f'/carts/{second}/checkout', json={'idempotency_key': 'chk-2'}, headers=headers)

        assert response.status_code == 409
        assert client.get(f'/carts/{second}', headers=headers).status_code == 200

    def test_empty_cart(self, client, session, headers):
        cart_id = _open_cart(client, headers)
        response = client.post(f'/carts/{cart_id}/checkout', json={}, headers=headers)
        assert response.status_code == 400


class TestMetrics:
    """Prometheus endpoint."""

    def test_metrics_exposed(self, client, session, headers):
        cart_id = _open_cart(client, headers)
        client.get(f'/carts/{cart_id}', headers=headers)

        response = client.get('/metrics')

        assert response.status_code == 200
        assert b'cart_recomputations_total' in response.data
