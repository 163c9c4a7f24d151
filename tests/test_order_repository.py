import pytest

from config import settings
from core.exceptions import Busy, ConcurrencyConflict, CourierNotFound
from services import order_repository


async def test_update_order_bumps_version(make_user, make_order):
    customer = await make_user()
    order = await make_order(customer["user_id"])

    updated = await order_repository.update_order(order, {"$set": {"package_details": "fragile"}})

    assert updated["version"] == 1
    assert updated["package_details"] == "fragile"


async def test_guarded_update_returns_the_written_document(make_user, make_order):
    customer = await make_user()
    order = await make_order(customer["user_id"])

    # Le filtre ne correspond plus au document une fois écrit
    updated = await order_repository.update_order(
        order, {"$set": {"status": "cancelled"}}, extra_filter={"status": "open"},
    )

    assert updated["status"] == "cancelled"
    assert updated["version"] == 1
    assert "_id" not in updated


async def test_stale_version_is_a_conflict(make_user, make_order):
    customer = await make_user()
    order = await make_order(customer["user_id"])
    await order_repository.update_order(order, {"$set": {"package_details": "a"}})

    with pytest.raises(ConcurrencyConflict):
        await order_repository.update_order(order, {"$set": {"package_details": "b"}})
    assert (await order_repository.get_order(order["order_id"]))["package_details"] == "a"


async def test_with_retry_gives_up_as_busy(monkeypatch):
    monkeypatch.setattr(settings, "MAX_WRITE_RETRIES", 3)
    calls = []

    async def always_conflicts():
        calls.append(1)
        raise ConcurrencyConflict(order_id="ord_1")

    with pytest.raises(Busy):
        await order_repository.with_retry(always_conflicts)
    assert len(calls) == 3


async def test_with_retry_returns_after_transient_conflict():
    attempts = []

    async def flaky(value):
        attempts.append(value)
        if len(attempts) == 1:
            raise ConcurrencyConflict(order_id="ord_1")
        return value

    assert await order_repository.with_retry(flaky, "ok") == "ok"
    assert len(attempts) == 2


async def test_update_user_never_touches_wallet(make_user):
    user = await make_user(wallet_balance=10.0)
    updated = await order_repository.update_user(user["user_id"], {"wallet_balance": 999.0, "name": "Awa"})
    assert updated["wallet_balance"] == 10.0
    assert updated["name"] == "Awa"


async def test_get_courier_checks_role(make_user):
    customer = await make_user()
    with pytest.raises(CourierNotFound):
        await order_repository.get_courier(customer["user_id"])


async def test_list_orders_without_limit_returns_everything(make_user, make_order):
    customer = await make_user()
    for _ in range(205):
        await make_order(customer["user_id"])

    assert len(await order_repository.list_orders({"customer_id": customer["user_id"]})) == 200
    assert len(await order_repository.list_orders({"customer_id": customer["user_id"]}, limit=None)) == 205
