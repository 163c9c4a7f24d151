import asyncio

import pytest

from core.exceptions import BidNotFound, CourierNotFound, OrderClosed, OrderNotFound, QuorumAlreadyReached
from services import (
    acceptance_service, bidding_service, notification_service, order_repository, primary_courier,
)

from conftest import DAKAR


@pytest.fixture(autouse=True)
def short_route(routes, clock):
    routes["pickup"] = 1_000.0
    routes["dropoff"] = 5_000.0


async def _bidders(make_courier, order, count, **fields):
    couriers = [await make_courier(**fields) for _ in range(count)]
    for courier in couriers:
        await bidding_service.place_bid(order["order_id"], courier["user_id"], 10.0)
    return couriers


def _assert_quorum_invariant(order):
    assert len(order["accepted_couriers"]) <= order["required_couriers"]
    if order["status"] == "in_progress":
        primaries = [cid for cid, a in order["couriers"].items() if a["is_primary"]]
        assert primaries == [order["primary_courier_id"]]


async def test_single_courier_reaches_quorum(make_user, make_courier, make_order):
    customer = await make_user()
    order = await make_order(customer["user_id"])
    (courier,) = await _bidders(make_courier, order, 1)

    result = await acceptance_service.accept_bid(order["order_id"], courier["user_id"])

    assert result["quorum_reached"] is True
    assert result["status"] == "in_progress"
    assert result["primary_courier_id"] == courier["user_id"]
    assignment = result["assignment"]
    assert assignment["is_primary"] is True
    assert len(assignment["pickup_pin"]) == 4 and assignment["pickup_pin"].isdigit()
    assert assignment["initial_location"] == DAKAR
    assert assignment["pickup_confirmed"] is False and assignment["finalized"] is False

    stored = await order_repository.get_order(order["order_id"])
    assert stored["bid_expired"] is True
    _assert_quorum_invariant(stored)


async def test_accept_is_idempotent(make_user, make_courier, make_order):
    customer = await make_user()
    order = await make_order(customer["user_id"], required_couriers=2)
    (courier, _) = await _bidders(make_courier, order, 2)

    first = await acceptance_service.accept_bid(order["order_id"], courier["user_id"])
    version = (await order_repository.get_order(order["order_id"]))["version"]
    again = await acceptance_service.accept_bid(order["order_id"], courier["user_id"])

    assert again["assignment"] == first["assignment"]
    assert again["accepted_couriers"] == [courier["user_id"]]
    assert again["status"] == "open"
    assert (await order_repository.get_order(order["order_id"]))["version"] == version


async def test_quorum_closes_acceptance(make_user, make_courier, make_order, mongo):
    customer = await make_user()
    order = await make_order(customer["user_id"], required_couriers=2)
    a, b, c = await _bidders(make_courier, order, 3)

    first = await acceptance_service.accept_bid(order["order_id"], a["user_id"])
    assert first["quorum_reached"] is False
    assert first["assignment"]["is_primary"] is False

    second = await acceptance_service.accept_bid(order["order_id"], b["user_id"])
    assert second["quorum_reached"] is True
    assert second["accepted_couriers"] == [a["user_id"], b["user_id"]]

    with pytest.raises(QuorumAlreadyReached):
        await acceptance_service.accept_bid(order["order_id"], c["user_id"])

    stored = await order_repository.get_order(order["order_id"])
    _assert_quorum_invariant(stored)

    await notification_service.drain()
    expired = await mongo.notifications.find({"message_key": "bid_expired"}).to_list(length=10)
    assert [n["user_id"] for n in expired] == [c["user_id"]]
    assert await mongo.notifications.count_documents(
        {"message_key": "order_active", "user_id": customer["user_id"]}
    ) == 1
    accepted_msgs = await mongo.notifications.find({"message_key": "bid_accepted"}).to_list(length=10)
    assert len(accepted_msgs) == 2
    for n in accepted_msgs:
        assert stored["couriers"][n["user_id"]]["pickup_pin"] in n["body"]


async def test_concurrent_acceptances_never_exceed_quorum(make_user, make_courier, make_order):
    customer = await make_user()
    order = await make_order(customer["user_id"], required_couriers=2)
    couriers = await _bidders(make_courier, order, 5)

    results = await asyncio.gather(
        *(acceptance_service.accept_bid(order["order_id"], c["user_id"]) for c in couriers),
        return_exceptions=True,
    )

    accepted = [r for r in results if isinstance(r, dict)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(accepted) == 2
    assert all(isinstance(e, QuorumAlreadyReached) for e in rejected)

    stored = await order_repository.get_order(order["order_id"])
    assert stored["status"] == "in_progress"
    _assert_quorum_invariant(stored)


async def test_primary_is_highest_weight(make_user, make_courier, make_order):
    customer = await make_user()
    order = await make_order(customer["user_id"], required_couriers=2)
    novice = await make_courier(rating=5.0, order_count=0)      # 1.5
    veteran = await make_courier(rating=3.0, order_count=10)    # 7.9
    for c in (novice, veteran):
        await bidding_service.place_bid(order["order_id"], c["user_id"], 10.0)

    await acceptance_service.accept_bid(order["order_id"], novice["user_id"])
    result = await acceptance_service.accept_bid(order["order_id"], veteran["user_id"])

    assert result["primary_courier_id"] == veteran["user_id"]
    stored = await order_repository.get_order(order["order_id"])
    assert stored["couriers"][novice["user_id"]]["is_primary"] is False
    assert stored["couriers"][veteran["user_id"]]["is_primary"] is True


async def test_primary_tie_goes_to_first_accepted(make_user, make_courier, make_order):
    customer = await make_user()
    order = await make_order(customer["user_id"], required_couriers=3)
    couriers = await _bidders(make_courier, order, 3, rating=4.0, order_count=2)

    for c in reversed(couriers):
        result = await acceptance_service.accept_bid(order["order_id"], c["user_id"])

    assert result["primary_courier_id"] == couriers[-1]["user_id"]
    # Rappel : sans effet, même gagnant
    assert await primary_courier.designate(order["order_id"]) == couriers[-1]["user_id"]


def test_select_primary_is_pure():
    couriers = {
        "a": {"rating": 1.0, "order_count": 1},
        "b": {"rating": 1.0, "order_count": 1},
        "c": {"rating": 0.0, "order_count": 0},
    }
    assert primary_courier.select_primary(["a", "b", "c"], couriers) == "a"
    assert primary_courier.select_primary(["b", "a"], couriers) == "b"
    assert primary_courier.select_primary([], couriers) is None


async def test_designate_sets_single_primary(make_user, make_courier, make_order):
    customer = await make_user()
    a = await make_courier(order_count=1)
    b = await make_courier(order_count=3)
    order = await make_order(
        customer["user_id"], required_couriers=2,
        accepted_couriers=[a["user_id"], b["user_id"]],
        couriers={a["user_id"]: {"is_primary": False}, b["user_id"]: {"is_primary": False}},
    )

    assert await primary_courier.designate(order["order_id"]) == b["user_id"]
    stored = await order_repository.get_order(order["order_id"])
    assert stored["couriers"][a["user_id"]]["is_primary"] is False
    assert stored["couriers"][b["user_id"]]["is_primary"] is True
    version = stored["version"]

    assert await primary_courier.designate(order["order_id"]) == b["user_id"]
    assert (await order_repository.get_order(order["order_id"]))["version"] == version


async def test_accept_without_bid(make_user, make_courier, make_order):
    customer = await make_user()
    courier = await make_courier()
    order = await make_order(customer["user_id"])
    with pytest.raises(BidNotFound):
        await acceptance_service.accept_bid(order["order_id"], courier["user_id"])


async def test_accept_on_cancelled_order(make_user, make_courier, make_order):
    customer = await make_user()
    courier = await make_courier()
    order = await make_order(
        customer["user_id"], status="cancelled", offers={courier["user_id"]: {"final_estimated_cost": 1.0}},
    )
    with pytest.raises(OrderClosed):
        await acceptance_service.accept_bid(order["order_id"], courier["user_id"])


async def test_accept_unknown_order_or_courier(make_user, make_order):
    with pytest.raises(OrderNotFound):
        await acceptance_service.accept_bid("ord_missing", "usr_x")

    customer = await make_user()
    order = await make_order(customer["user_id"], offers={"usr_gone": {"final_estimated_cost": 1.0}})
    with pytest.raises(CourierNotFound):
        await acceptance_service.accept_bid(order["order_id"], "usr_gone")
