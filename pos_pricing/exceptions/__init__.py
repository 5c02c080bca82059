"""Custom exceptions for the POS pricing engine."""


def _fmt_qty(value):
    return f"{int(value)}" if value % 1 == 0 else f"{value:.2f}".rstrip('0').rstrip('.')


class PricingError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv


class BusinessLogicError(PricingError):
    """Exception raised for business logic violations."""
    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)


class ValidationError(BusinessLogicError):
    """Malformed promotion or discount record."""
    def __init__(self, message, record_id=None):
        super().__init__(message, 400, {'error': 'ValidationError', 'record_id': record_id})
        self.record_id = record_id


class NotFoundError(PricingError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class DiscountNotApplicableError(BusinessLogicError):
    """Raised when a manual discount does not apply to the selected items or cart."""
    def __init__(self, message, discount_name=None):
        super().__init__(message, 400, {'error': 'DiscountNotApplicable', 'discount': discount_name})


class StaleCartError(BusinessLogicError):
    """Raised when a cart mutation was prepared against an outdated version."""
    def __init__(self, cart_id, expected, current):
        message = f"Cart {cart_id} changed: expected version {expected}, current version {current}"
        super().__init__(message, 409, {
            'error': 'StaleCart', 'cart_id': cart_id,
            'expected_version': expected, 'current_version': current
        })


class QuantityConflictError(BusinessLogicError):
    """Requested quantity exceeds shared inventory or a remaining allocatable quantity."""
    error_code = 'QuantityConflict'

    def __init__(self, message, conflicts=None):
        super().__init__(message, 409, {'error': self.error_code, 'conflicts': conflicts or []})
        self.conflicts = conflicts or []


class InsufficientUndiscountedQuantityError(QuantityConflictError):
    """Raised when a manual discount selects more units than remain undiscounted."""
    error_code = 'InsufficientUndiscountedQuantity'

    def __init__(self, item_name, requested, available):
        message = (
            f"Not enough undiscounted units of {item_name}: "
            f"requested {_fmt_qty(requested)}, available {_fmt_qty(available)}"
        )
        super().__init__(message, [{'name': item_name, 'needed': requested, 'available': available}])
        self.item_name = item_name
        self.requested = requested
        self.available = available


class ExceedsAvailableQuantityError(QuantityConflictError):
    """Raised when a refund asks for more units than remain refundable."""
    error_code = 'ExceedsAvailableQuantity'

    def __init__(self, item_name, requested, available):
        message = (
            f"Cannot refund {_fmt_qty(requested)} of {item_name}: "
            f"only {_fmt_qty(available)} refundable"
        )
        super().__init__(message, [{'name': item_name, 'needed': requested, 'available': available}])
        self.item_name = item_name
        self.requested = requested
        self.available = available


class WindowExpiredError(BusinessLogicError):
    """Raised when a refund is requested after the eligibility window closed."""
    def __init__(self, sale_id, completed_at, window_minutes):
        message = (
            f"Refund window for sale #{sale_id} closed "
            f"{window_minutes} minutes after {completed_at.isoformat()}"
        )
        super().__init__(message, 409, {'error': 'WindowExpired', 'sale_id': sale_id})
        self.sale_id = sale_id


class OverlapViolation(AssertionError):
    """A unit ended up covered by more than one promotion or discount."""
