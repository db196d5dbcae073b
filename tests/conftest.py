import sys
import os
import pytest
import pytest_asyncio

# Добавляем корень проекта в sys.path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from database.db import init_db
from database import queries as db_queries

# Connaught Place, New Delhi
SHOP_LAT, SHOP_LNG = 28.6139, 77.2090
# ~0.83 km from the shop
NEAR_LAT, NEAR_LNG = 28.6200, 77.2150
# ~6 km north of the shop
FAR_LAT, FAR_LNG = 28.6679, 77.2090


@pytest_asyncio.fixture
async def db(tmp_path, mocker):
    """Фикстура: пустая временная база для каждого теста."""
    db_path = tmp_path / "dispatch_test.db"
    mocker.patch('database.queries.DB_PATH', db_path)
    await init_db(db_path)
    return db_path


@pytest_asyncio.fixture
async def marketplace(db):
    """A shop, a customer and two online partners: one near the shop, one 6 km away."""
    await db_queries.upsert_profile('shop-1', 'shop_owner', full_name='Ravi Kumar', telegram_chat_id=1001,
                                    shop_name='Fresh Mart', shop_category='grocery',
                                    shop_address='Connaught Place, New Delhi', shop_lat=SHOP_LAT, shop_lng=SHOP_LNG)
    await db_queries.upsert_profile('customer-1', 'customer', full_name='Asha Verma', telegram_chat_id=1002)
    await db_queries.upsert_profile('partner-near', 'delivery_partner', full_name='Vikram', telegram_chat_id=2001,
                                    is_online=True, latitude=NEAR_LAT, longitude=NEAR_LNG)
    await db_queries.upsert_profile('partner-far', 'delivery_partner', full_name='Sunil', telegram_chat_id=2002,
                                    is_online=True, latitude=FAR_LAT, longitude=FAR_LNG)
    return db


@pytest.fixture
def order_items():
    return [
        {'product_ref': 'milk-1l', 'quantity': 2, 'unit_price': 1.5},
        {'product_ref': 'bread', 'quantity': 1, 'unit_price': 2.0},
    ]


@pytest.fixture
def geocode(mocker):
    """Geocoder stub; the real one calls Nominatim over the network."""
    return mocker.AsyncMock(return_value=None)


@pytest_asyncio.fixture
async def coordinator(geocode):
    from core.coordinator import DispatchCoordinator
    coordinator = DispatchCoordinator(geocode=geocode)
    yield coordinator
    await coordinator.shutdown()
