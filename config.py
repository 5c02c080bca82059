"""Configuration module for Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'pos')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'pos')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'pos')

        DATABASE_URL = (
            f"postgresql://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'
    DB_CREATE_ALL = os.getenv('DB_CREATE_ALL', 'false').lower() == 'true'

    # Store context: used when a request carries no X-Store-Id header
    DEFAULT_STORE_ID = os.getenv('DEFAULT_STORE_ID')

    # Refunds
    REFUND_WINDOW_MINUTES = int(os.getenv('REFUND_WINDOW_MINUTES', '30'))
    REFUND_POLL_INTERVAL_SECONDS = int(os.getenv('REFUND_POLL_INTERVAL_SECONDS', '60'))

    # Live carts: dropped after this many idle seconds (0 keeps them)
    CART_IDLE_TTL_SECONDS = int(os.getenv('CART_IDLE_TTL_SECONDS', '7200'))

    # Inventory service (shared-stock checks before quantity increases)
    INVENTORY_API_URL = os.getenv('INVENTORY_API_URL', '')
    INVENTORY_API_TIMEOUT = float(os.getenv('INVENTORY_API_TIMEOUT', '5'))
    INVENTORY_CHECK_ENABLED = os.getenv('INVENTORY_CHECK_ENABLED', 'true').lower() == 'true'

    # Redis Cache Configuration
    # Promotion/discount records per store
    REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
    CACHE_ENABLED = os.getenv('CACHE_ENABLED', 'true').lower() == 'true'
    CACHE_PROMOTIONS_TTL = int(os.getenv('CACHE_PROMOTIONS_TTL', '300'))
    CACHE_KEY_PREFIX = os.getenv('CACHE_KEY_PREFIX', 'pos')


class TestConfig(Config):
    """In-memory SQLite, no Redis, no inventory service."""
    TESTING = True
    DEBUG = False
    ENV = 'testing'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ECHO = False
    DB_CREATE_ALL = True
    CACHE_ENABLED = False
    INVENTORY_CHECK_ENABLED = False
    INVENTORY_API_URL = ''
    DEFAULT_STORE_ID = None
