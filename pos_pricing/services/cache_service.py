"""
Redis cache for store catalogs.

One key per store holds the raw promotion and discount records exactly as
read from the database; normalization happens after the read, so validity
windows are always checked against the current time. Redis being down
only costs a database read.
"""

import logging
import json
from typing import Any, Callable, Dict, Optional
from datetime import datetime, date
from decimal import Decimal

import redis
from redis.exceptions import RedisError, ConnectionError, TimeoutError
from flask import Flask

logger = logging.getLogger(__name__)

RawCatalog = Dict[str, list]


def _encode(value: Any) -> Any:
    # Amounts keep their exact digits; dates travel as ISO strings
    if isinstance(value, Decimal):
        return {'__decimal__': str(value)}
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Catalog field of type {type(value).__name__} cannot be cached")


def _decode(obj: Dict[str, Any]) -> Any:
    if '__decimal__' in obj:
        return Decimal(obj['__decimal__'])
    return obj


def dump_catalog(catalog: RawCatalog) -> str:
    return json.dumps(catalog, default=_encode)


def load_catalog(payload: str) -> RawCatalog:
    catalog = json.loads(payload, object_hook=_decode)
    if not isinstance(catalog, dict) or not {'promotions', 'discounts'} <= catalog.keys():
        raise ValueError('Cached catalog is missing promotions or discounts')
    return catalog


class CatalogCache:
    """
    Cache-aside store for raw per-store catalogs.

    Keys pattern: {prefix}:store:{store_id}:catalog
    """

    def __init__(self, app: Optional[Flask] = None):
        self.client: Optional[redis.Redis] = None
        self._enabled: bool = False
        self._prefix: str = ""
        self._ttl: int = 300

        if app:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        """Initialize Redis client from Flask app config."""
        self._enabled = app.config.get('CACHE_ENABLED', True)
        self._prefix = app.config.get('CACHE_KEY_PREFIX', 'pos')
        self._ttl = app.config.get('CACHE_PROMOTIONS_TTL', 300)
        redis_url = app.config.get('REDIS_URL', 'redis://redis:6379/0')

        if not self._enabled:
            logger.info("[CACHE] Catalog cache is DISABLED via config")
            return

        try:
            self.client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=3,
                retry_on_timeout=True,
                health_check_interval=30
            )
            self.client.ping()
            logger.info(f"[CACHE] Redis connected: {redis_url}")
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"[CACHE] Redis connection failed: {e}. Catalog cache DISABLED.")
            self._enabled = False
            self.client = None

    @property
    def enabled(self) -> bool:
        return self._enabled and self.client is not None

    def key_for(self, store_id: int) -> str:
        return f"{self._prefix}:store:{store_id}:catalog"

    def catalog_records(self, store_id: int, loader: Callable[[], RawCatalog]) -> RawCatalog:
        """
        Raw catalog of a store, from Redis or from `loader`.

        A freshly loaded catalog is written back with the promotions TTL.
        Read or write failures fall through to the loader result.
        """
        if not self.enabled:
            return loader()

        key = self.key_for(store_id)
        try:
            payload = self.client.get(key)
            if payload is not None:
                logger.debug(f"[CACHE] HIT {key}")
                return load_catalog(payload)
        except (RedisError, ValueError) as e:
            logger.warning(f"[CACHE] Read error on {key}: {e}")

        catalog = loader()
        try:
            self.client.setex(key, self._ttl, dump_catalog(catalog))
            logger.debug(f"[CACHE] MISS {key}, stored for {self._ttl}s")
        except (RedisError, TypeError) as e:
            logger.warning(f"[CACHE] Write error on {key}: {e}")
        return catalog

    def invalidate_catalog(self, store_id: int) -> bool:
        """Drop the cached catalog of a store after its records changed."""
        if not self.enabled:
            return False
        key = self.key_for(store_id)
        try:
            deleted = self.client.delete(key)
            logger.info(f"[CACHE] INVALIDATE {key}")
            return bool(deleted)
        except RedisError as e:
            logger.warning(f"[CACHE] Invalidate error on {key}: {e}")
            return False


_catalog_cache: Optional[CatalogCache] = None


def init_cache(app: Flask) -> None:
    """Initialize the catalog cache singleton."""
    global _catalog_cache
    _catalog_cache = CatalogCache(app)
    app.extensions['catalog_cache'] = _catalog_cache


def get_cache() -> CatalogCache:
    if _catalog_cache is None:
        raise RuntimeError("Catalog cache not initialized.")
    return _catalog_cache
