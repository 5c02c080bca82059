"""Middleware for store and cashier context."""
from functools import wraps
from flask import g, request, current_app

from pos_pricing.exceptions import BusinessLogicError


def load_store_context():
    """
    Load store and cashier context into g (Flask's per-request global).
    
    Called before each request. Sets g.store_id from the X-Store-Id header
    (falling back to DEFAULT_STORE_ID), g.cashier_name from X-Cashier-Name
    and g.auth_token from the bearer token, forwarded to collaborators.
    """
    g.store_id = None
    g.cashier_name = request.headers.get('X-Cashier-Name')
    g.auth_token = None
    
    auth_header = request.headers.get('Authorization', '')
    if auth_header.lower().startswith('bearer '):
        g.auth_token = auth_header[7:].strip() or None
    
    raw_store_id = request.headers.get('X-Store-Id') or current_app.config.get('DEFAULT_STORE_ID')
    if raw_store_id in (None, ''):
        return
    try:
        g.store_id = int(raw_store_id)
    except (TypeError, ValueError):
        current_app.logger.warning(f"Invalid X-Store-Id header: {raw_store_id!r}")


def require_store(f):
    """
    Decorator: Require a store context.
    
    Responds 400 when neither the request nor the config names a store.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get('store_id') is None:
            raise BusinessLogicError('X-Store-Id header is required')
        return f(*args, **kwargs)
    return decorated_function
