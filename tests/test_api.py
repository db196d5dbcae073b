import asyncio
import json
import sys
import os
import pytest
from fastapi.testclient import TestClient

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from conftest import NEAR_LAT, NEAR_LNG, SHOP_LAT, SHOP_LNG
from api import create_app
from core.coordinator import DispatchCoordinator
from database.db import init_db
from database import queries as db_queries


@pytest.fixture
def client(tmp_path, mocker):
    """TestClient runs the app on its own event loop, so the database is prepared synchronously."""
    db_path = tmp_path / "api_test.db"
    mocker.patch('database.queries.DB_PATH', db_path)

    async def prepare():
        await init_db(db_path)
        await db_queries.upsert_profile('shop-1', 'shop_owner', shop_name='Fresh Mart', shop_category='grocery',
                                        shop_address='Connaught Place', shop_lat=SHOP_LAT, shop_lng=SHOP_LNG)
        await db_queries.upsert_profile('customer-1', 'customer', full_name='Asha Verma')
        await db_queries.upsert_profile('partner-near', 'delivery_partner', is_online=True,
                                        latitude=NEAR_LAT, longitude=NEAR_LNG)

    asyncio.run(prepare())
    coordinator = DispatchCoordinator(geocode=mocker.AsyncMock(return_value=None))
    with TestClient(create_app(coordinator)) as test_client:
        yield test_client


@pytest.fixture
def order_id(client):
    response = client.post('/orders', json={
        'customer_id': 'customer-1',
        'shop_id': 'shop-1',
        'items': [{'product_ref': 'milk-1l', 'quantity': 2, 'unit_price': 1.5}],
        'delivery_address': 'India Gate',
        'delivery_lat': NEAR_LAT,
        'delivery_lng': NEAR_LNG,
    })
    assert response.status_code == 201
    return response.json()['id']


def _transition(client, order_id, actor, actor_id, action):
    return client.post(f'/orders/{order_id}/transition', json={'actor': actor, 'actor_id': actor_id, 'action': action})


def test_create_and_read_order(client, order_id):
    response = client.get(f'/orders/{order_id}')
    assert response.status_code == 200
    body = response.json()
    assert body['status'] == 'pending'
    assert body['total_amount'] == 3.0
    assert body['pickup']['lat'] == SHOP_LAT


def test_create_order_validation(client):
    response = client.post('/orders', json={'customer_id': 'c', 'shop_id': 's', 'items': [], 'delivery_address': 'x'})
    assert response.status_code == 422


def test_unknown_order_is_404(client):
    assert client.get('/orders/missing').status_code == 404
    response = _transition(client, 'missing', 'shop', 'shop-1', 'accept')
    assert response.status_code == 404
    assert response.json()['error'] == 'order_not_found'


def test_transition_status_codes(client, order_id):
    response = _transition(client, order_id, 'shop', 'shop-1', 'accept')
    assert response.json() == {'status': 'accepted', 'changed': True}

    response = _transition(client, order_id, 'shop', 'shop-1', 'accept')
    assert response.json() == {'status': 'accepted', 'changed': False}

    response = _transition(client, order_id, 'customer', 'customer-1', 'cancel')
    assert response.status_code == 422
    assert response.json()['error'] == 'invalid_transition'


def test_second_partner_gets_409(client, order_id):
    assert _transition(client, order_id, 'delivery_partner', 'partner-near', 'accept').status_code == 200
    response = _transition(client, order_id, 'delivery_partner', 'partner-other', 'accept')
    assert response.status_code == 409
    assert response.json()['error'] == 'already_assigned'


def test_location_endpoint(client, order_id):
    _transition(client, order_id, 'delivery_partner', 'partner-near', 'accept')

    response = client.post(f'/orders/{order_id}/location', json={
        'partner_id': 'partner-near', 'lat': 28.615, 'lng': 77.21, 'timestamp': '2026-05-01T12:00:00+00:00',
    })
    assert response.json() == {'accepted': True, 'reason': None}

    response = client.post(f'/orders/{order_id}/location', json={
        'partner_id': 'partner-near', 'lat': 28.616, 'lng': 77.21, 'timestamp': '2026-05-01T11:59:00+00:00',
    })
    assert response.json() == {'accepted': False, 'reason': 'out_of_order'}

    response = client.post(f'/orders/{order_id}/location', json={'partner_id': 'intruder', 'lat': 28.6, 'lng': 77.2})
    assert response.status_code == 403

    track = client.get(f'/orders/{order_id}/track').json()
    assert [point['lat'] for point in track] == [28.615]


def test_location_for_finished_order_is_not_accepted(client, order_id):
    _transition(client, order_id, 'customer', 'customer-1', 'cancel')
    response = client.post(f'/orders/{order_id}/location', json={'partner_id': 'partner-near', 'lat': 28.6, 'lng': 77.2})
    assert response.status_code == 200
    assert response.json() == {'accepted': False, 'reason': 'stale_order'}


def test_stream_of_finished_order(client, order_id):
    _transition(client, order_id, 'customer', 'customer-1', 'cancel')
    with client.stream('GET', f'/orders/{order_id}/stream', params={'watcher_id': 'customer-1'}) as response:
        assert response.status_code == 200
        assert response.headers['content-type'].startswith('application/x-ndjson')
        events = [json.loads(line) for line in response.iter_lines() if line]
    assert events == [{'type': 'status', 'order_id': order_id, 'status': 'cancelled'}]


def test_stream_of_unknown_order(client):
    response = client.get('/orders/missing/stream', params={'watcher_id': 'customer-1'})
    assert response.status_code == 404


def test_nearby_shops(client):
    response = client.get('/shops/nearby', params={'lat': NEAR_LAT, 'lng': NEAR_LNG, 'radius_km': 5})
    shops = response.json()
    assert [shop['id'] for shop in shops] == ['shop-1']
    assert shops[0]['distance_km'] == pytest.approx(0.83, abs=0.05)

    response = client.get('/shops/nearby', params={'lat': NEAR_LAT, 'lng': NEAR_LNG, 'radius_km': 0.5})
    assert response.json() == []


def test_order_board_and_available_orders(client, order_id):
    for action in ('accept', 'prepare', 'mark_ready'):
        _transition(client, order_id, 'shop', 'shop-1', action)

    board = client.get('/orders', params={'status': 'ready', 'unassigned': 'true'}).json()
    assert [order['id'] for order in board] == [order_id]

    available = client.get('/partners/partner-near/available-orders').json()
    assert [item['order']['id'] for item in available] == [order_id]
    assert available[0]['distance_km'] == pytest.approx(0.83, abs=0.05)

    _transition(client, order_id, 'delivery_partner', 'partner-near', 'accept')
    assert client.get('/orders', params={'status': 'ready', 'unassigned': 'true'}).json() == []
    mine = client.get('/orders', params={'partner_id': 'partner-near'}).json()
    assert [(order['id'], order['status']) for order in mine] == [(order_id, 'accepted')]


def test_order_board_rejects_unknown_status(client):
    response = client.get('/orders', params={'status': 'teleported'})
    assert response.status_code == 422
    assert response.json()['error'] == 'invalid_request'
