"""Inventory API client for shared-stock checks before cart mutations."""
import requests
from typing import Any, Dict, List, Optional, Sequence
from flask import current_app

from pos_pricing.exceptions import QuantityConflictError
from pos_pricing.models.cart import LineItem


class InventoryClient:
    """
    Client for the inventory service.

    Products can share limited resources (ingredients, packaging); the
    inventory service answers whether a simulated cart still fits.
    """

    def __init__(self, base_url: str, timeout: float = 5, auth_token: Optional[str] = None):
        """
        Initialize inventory client.

        Args:
            base_url: Inventory API root, e.g. http://inventory:8001
            timeout: Request timeout in seconds
            auth_token: Bearer token forwarded from the cashier's request
        """
        if not base_url:
            raise ValueError("INVENTORY_API_URL is required")
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.headers = {'Content-Type': 'application/json'}
        if auth_token:
            self.headers['Authorization'] = f'Bearer {auth_token}'

    @staticmethod
    def _cart_payload(items: Sequence[LineItem]) -> List[Dict[str, Any]]:
        return [
            {
                'product_id': item.product_id,
                'name': item.name,
                'quantity': item.quantity,
                'kind': item.kind.value,
                'addons': [
                    {'addon_id': addon.addon_id, 'quantity': addon.quantity * item.quantity}
                    for addon in item.addons
                ],
            }
            for item in items
        ]

    def check_cart(self, simulated_items: Sequence[LineItem], new_product_id: Optional[str] = None) -> None:
        """
        Check that the cart as it would look after a mutation is in stock.

        Args:
            simulated_items: Cart lines after the pending mutation
            new_product_id: Product being added, if the mutation adds one

        Raises:
            QuantityConflictError: The inventory service reports conflicts

        Unreachable or failing inventory services do not block the cashier;
        the error is logged and the mutation proceeds.
        """
        if new_product_id is not None:
            url = f"{self.base_url}/products/check-cart-conflicts"
            payload = {'cart_items': self._cart_payload(simulated_items), 'new_product_id': new_product_id}
        else:
            url = f"{self.base_url}/products/check-quantity-increase"
            payload = {'cart_items': self._cart_payload(simulated_items)}

        try:
            response = requests.post(url, json=payload, headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as e:
            current_app.logger.error(f"[INVENTORY] Check failed ({e.response.status_code}): {e.response.text}")
            return
        except (requests.RequestException, ValueError) as e:
            current_app.logger.error(f"[INVENTORY] Check unavailable: {str(e)}")
            return

        can_add = data.get('canAdd', data.get('can_add', True))
        conflicts = data.get('conflicts') or []
        if can_add:
            return

        names = ', '.join(str(c.get('name')) for c in conflicts) or 'shared stock'
        current_app.logger.info(f"[INVENTORY] Conflict on {names}")
        raise QuantityConflictError(f'Not enough stock: {names}', conflicts)
