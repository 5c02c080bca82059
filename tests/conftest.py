import pytest
from datetime import timedelta
from decimal import Decimal
import uuid

from pos_pricing import create_app
from pos_pricing.database import Base, db_session, get_session
from pos_pricing.models import (
    BundleGroupId, DiscountRecord, LineItem, PromotionRecord
)


STORE_ID = 1
OTHER_STORE_ID = 2


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing (in-memory SQLite, no Redis)."""
    app = create_app('config.TestConfig')
    return app


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Database session; every table is emptied afterwards."""
    session = get_session()
    yield session
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    db_session.remove()


@pytest.fixture
def headers():
    """Request headers for the default test store."""
    return {'X-Store-Id': str(STORE_ID), 'X-Cashier-Name': 'Test Cashier'}


@pytest.fixture(scope='function')
def bogo_record(session):
    """Buy one Latte, get one 50% off."""
    record = PromotionRecord(
        store_id=STORE_ID,
        name='Latte B1G1 50%',
        promotion_type='bogo',
        products='Latte',
        buy_quantity=1,
        get_quantity=1,
        bogo_discount_type='percentage',
        bogo_discount_value=Decimal('50'),
        status='active',
    )
    session.add(record)
    session.commit()
    return record


@pytest.fixture(scope='function')
def percentage_record(session):
    """20% off every pastry."""
    record = PromotionRecord(
        store_id=STORE_ID,
        name='Pastry Week',
        promotion_type='percentage',
        value='20%',
        products='Pastry',
        application_type='specific_categories',
        status='active',
    )
    session.add(record)
    session.commit()
    return record


@pytest.fixture(scope='function')
def discount_record(session):
    """10% senior discount, any product."""
    record = DiscountRecord(
        store_id=STORE_ID,
        name='Senior 10%',
        type='percentage',
        discount='10%',
        min_spend=Decimal('0'),
        application_type='all_products',
        status='active',
    )
    session.add(record)
    session.commit()
    return record


def make_line(name='Latte', unit_price='100', quantity=1, **kwargs):
    """Build a cart line with a fresh line id."""
    kwargs.setdefault('product_id', f'p-{name.lower()}')
    return LineItem(
        line_id=uuid.uuid4().hex,
        name=name,
        unit_price=Decimal(unit_price),
        quantity=quantity,
        **kwargs
    )


def make_bundle_lines(promotion, *members):
    """
    Lines of one bundle instance.

    members: (name, unit_price, quantity) tuples.
    """
    group_id = BundleGroupId.mint(promotion.id)
    return [
        make_line(
            name, price, quantity,
            is_from_bundle=True,
            bundle_group_id=group_id,
            bundle_promotion_id=promotion.id,
            bundle_promotion_name=promotion.name,
            bundle_discount_type=promotion.bundle_discount_type,
            bundle_discount_value=promotion.bundle_discount_value,
        )
        for name, price, quantity in members
    ]


def minutes_after(moment, minutes):
    return moment + timedelta(minutes=minutes)
