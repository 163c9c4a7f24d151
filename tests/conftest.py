from datetime import datetime, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

import database
from config import settings
from core.utils import new_id
from models.common import OrderStatus, PaymentMode
from services import (
    acceptance_service, bidding_service, distance_service, fulfillment_service,
    notification_service, settlement_service, wallet_service,
)

# Modules qui importent `now_ms` par nom : l'horloge de test est posée sur chacun
CLOCK_MODULES = (bidding_service, fulfillment_service, settlement_service, wallet_service)

DAKAR = {"lat": 14.6928, "lng": -17.4467}
# ~10 km plus au nord
THIES_ROAD = {"lat": 14.7827, "lng": -17.4467}


class Clock:
    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
async def mongo():
    db = database.use_database(AsyncMongoMockClient(), "badr_test")
    yield db
    await notification_service.drain()
    database.use_database(None, "badr_test")


@pytest.fixture(autouse=True)
def offline_settings(monkeypatch):
    monkeypatch.setattr(settings, "GOOGLE_MAPS_API_KEY", None)
    monkeypatch.setattr(settings, "MONGO_TRANSACTIONS", False)
    monkeypatch.setattr(settings, "FIREBASE_CREDENTIALS", None)


@pytest.fixture
def clock(monkeypatch):
    c = Clock()
    for module in CLOCK_MODULES:
        monkeypatch.setattr(module, "now_ms", c)
    return c


@pytest.fixture
def routes(monkeypatch):
    """Estimateur déterministe : distances fixées par le test."""
    table = {"pickup": 0.0, "dropoff": 0.0}

    async def fake_estimate(origin, destination, client=None):
        if origin is None or destination is None:
            return {"distance_m": float("inf"), "duration_s": float("inf")}
        key = "dropoff" if destination == table.get("dropoff_target") else "pickup"
        distance = table[key]
        return {"distance_m": distance, "duration_s": distance / 15.0}

    monkeypatch.setattr(distance_service, "estimate", fake_estimate)
    return table


@pytest.fixture
def make_user(mongo):
    async def _make(role="customer", **fields):
        now = datetime.now(timezone.utc)
        doc = {
            "user_id":             new_id("usr"),
            "name":                f"{role} test",
            "phone":               None,
            "role":                role,
            "is_active":           True,
            "wallet_balance":      0.0,
            "fee_per_km":          0.0,
            "waiting_rate":        0.0,
            "rating":              0.0,
            "order_count":         0,
            "current_location":    None,
            "max_pickup_distance": None,
            "available_budget":    0.0,
            "language":            "en",
            "fcm_token":           None,
            "created_at":          now,
            "updated_at":          now,
        }
        doc.update(fields)
        await mongo.users.insert_one(dict(doc))
        return doc
    return _make


@pytest.fixture
def make_courier(make_user):
    async def _make(**fields):
        fields.setdefault("current_location", dict(DAKAR))
        fields.setdefault("fee_per_km", 2.0)
        return await make_user("courier", **fields)
    return _make


@pytest.fixture
def make_order(mongo, routes):
    async def _make(customer_id, payment_mode=PaymentMode.CASH, **fields):
        now = datetime.now(timezone.utc)
        doc = {
            "order_id":            new_id("ord"),
            "customer_id":         customer_id,
            "pickup_location":     dict(DAKAR),
            "dropoff_location":    dict(THIES_ROAD),
            "payment_mode":        payment_mode.value,
            "needed_budget":       0.0,
            "required_couriers":   1,
            "max_pickup_distance": None,
            "package_details":     None,
            "status":              OrderStatus.OPEN.value,
            "accepted_couriers":   [],
            "offers":              {},
            "couriers":            {},
            "dropoff_estimation":  None,
            "bid_expired":         False,
            "primary_courier_id":  None,
            "version":             0,
            "created_at":          now,
            "updated_at":          now,
            "completed_at":        None,
            "cancelled_at":        None,
        }
        doc.update(fields)
        routes["dropoff_target"] = doc["dropoff_location"]
        await mongo.orders.insert_one(dict(doc))
        return doc
    return _make


@pytest.fixture
def deliver(clock):
    """Amène un livreur accepté jusqu'au dropoff confirmé, sans attente facturée."""
    async def _deliver(order_id, courier_id):
        await fulfillment_service.record_pickup_arrival(order_id, courier_id)
        clock.advance(60_000)
        await fulfillment_service.confirm_pickup(order_id, courier_id, "img_pickup")
        await fulfillment_service.record_dropoff_arrival(order_id, courier_id)
        clock.advance(60_000)
        await fulfillment_service.confirm_dropoff(order_id, courier_id, "img_dropoff")
    return _deliver


@pytest.fixture
def bid_and_accept(clock):
    async def _run(order_id, courier_id, bid_amount=10.0):
        await bidding_service.place_bid(order_id, courier_id, bid_amount)
        return await acceptance_service.accept_bid(order_id, courier_id)
    return _run
