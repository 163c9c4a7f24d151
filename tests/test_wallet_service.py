import pytest
from pymongo.errors import PyMongoError

from core.exceptions import InsufficientFunds, UserNotFound, ValidationFailed
from models.common import PaymentMode
from models.wallet import SYSTEM_ACCOUNT, TransactionType, TransferLeg
from services import wallet_service


async def test_missing_account_balance_is_zero():
    assert await wallet_service.get_balance("usr_unknown") == 0.0
    assert await wallet_service.get_system_balance() == 0.0


async def test_deposit_credits_customer_and_appends_entry(make_user, mongo):
    customer = await make_user()
    result = await wallet_service.deposit(customer["user_id"], 50.0)

    assert result["new_balance"] == 50.0
    assert result["transaction"]["tx_type"] == TransactionType.DEPOSIT.value
    assert result["transaction"]["direction"] == "credit"
    assert await mongo.wallet_transactions.count_documents({"account_id": customer["user_id"]}) == 1


async def test_deposit_unknown_customer(mongo):
    with pytest.raises(UserNotFound):
        await wallet_service.deposit("usr_ghost", 10.0)


async def test_transfer_moves_funds(make_user):
    courier = await make_user("courier", wallet_balance=20.0)
    await wallet_service.transfer(
        courier["user_id"], SYSTEM_ACCOUNT, 2.5, "ord_1", TransactionType.PLATFORM_FEE_TRANSFER,
    )
    assert await wallet_service.get_balance(courier["user_id"]) == 17.5
    assert await wallet_service.get_system_balance() == 2.5


async def test_transfer_rejects_overdraft_with_shortfall(make_user, mongo):
    courier = await make_user("courier", wallet_balance=1.0)
    with pytest.raises(InsufficientFunds) as exc:
        await wallet_service.transfer(
            courier["user_id"], SYSTEM_ACCOUNT, 3.0, "ord_1", TransactionType.PLATFORM_FEE_TRANSFER,
        )
    assert exc.value.shortfall == pytest.approx(2.0)
    assert exc.value.to_dict()["error"] == "insufficient_funds"
    assert await wallet_service.get_balance(courier["user_id"]) == 1.0
    assert await mongo.wallet_transactions.count_documents({}) == 0


async def test_transfer_min_balance_allows_negative_floor(make_user):
    courier = await make_user("courier", wallet_balance=0.0)
    await wallet_service.transfer(
        courier["user_id"], SYSTEM_ACCOUNT, 30.0, None,
        TransactionType.PLATFORM_FEE_TRANSFER, min_balance=-100.0,
    )
    assert await wallet_service.get_balance(courier["user_id"]) == -30.0

    with pytest.raises(InsufficientFunds):
        await wallet_service.transfer(
            courier["user_id"], SYSTEM_ACCOUNT, 80.0, None,
            TransactionType.PLATFORM_FEE_TRANSFER, min_balance=-100.0,
        )


async def test_transfer_rejects_non_positive_amount(make_user):
    customer = await make_user(wallet_balance=10.0)
    with pytest.raises(ValueError):
        TransferLeg(from_account=customer["user_id"], amount=0, kind=TransactionType.ORDER_PAYMENT)
    with pytest.raises(ValidationFailed):
        await wallet_service.transfer_many([])


async def test_failed_leg_compensates_applied_legs(make_user, mongo):
    customer = await make_user(wallet_balance=100.0)
    courier = await make_user("courier", wallet_balance=0.0)
    legs = [
        TransferLeg(from_account=customer["user_id"], amount=40.0, kind=TransactionType.ORDER_PAYMENT),
        TransferLeg(to_account=courier["user_id"], amount=40.0, kind=TransactionType.ORDER_CREDIT),
        TransferLeg(from_account=courier["user_id"], to_account=SYSTEM_ACCOUNT, amount=50.0,
                    kind=TransactionType.PLATFORM_FEE_TRANSFER),
    ]
    with pytest.raises(InsufficientFunds):
        await wallet_service.transfer_many(legs, order_id="ord_1")

    assert await wallet_service.get_balance(customer["user_id"]) == 100.0
    assert await wallet_service.get_balance(courier["user_id"]) == 0.0
    assert await wallet_service.get_system_balance() == 0.0
    assert await mongo.wallet_transactions.count_documents({}) == 0


async def test_list_transactions(make_user):
    customer = await make_user()
    await wallet_service.deposit(customer["user_id"], 10.0)
    await wallet_service.deposit(customer["user_id"], 20.0)

    history = await wallet_service.list_transactions(customer["user_id"])
    assert history["total"] == 2
    assert sorted(tx["amount"] for tx in history["transactions"]) == [10.0, 20.0]
    assert all(tx["account_id"] == customer["user_id"] for tx in history["transactions"])


def test_reserved_for_bid_formula():
    bid = {"final_estimated_cost": 20.0}
    # (20 + 0.5 × 4) × 1.10
    assert wallet_service.reserved_for_bid(bid, 4.0) == pytest.approx(24.2)


async def test_reserved_amount_counts_accepted_unsettled_wallet_bids(make_user, make_courier, make_order):
    customer = await make_user(wallet_balance=100.0)
    courier_a = await make_courier(waiting_rate=2.0)
    courier_b = await make_courier(waiting_rate=0.0)
    bid = {"final_estimated_cost": 10.0}

    await make_order(
        customer["user_id"], PaymentMode.WALLET,
        required_couriers=2,
        status="in_progress",
        offers={courier_a["user_id"]: bid, courier_b["user_id"]: bid},
        accepted_couriers=[courier_a["user_id"], courier_b["user_id"]],
        couriers={courier_a["user_id"]: {"finalized": False}, courier_b["user_id"]: {"finalized": True}},
    )
    # Offre non acceptée, commande cash, commande terminée : hors réservation
    await make_order(customer["user_id"], PaymentMode.WALLET, offers={courier_a["user_id"]: bid})
    await make_order(
        customer["user_id"], PaymentMode.CASH,
        offers={courier_a["user_id"]: bid}, accepted_couriers=[courier_a["user_id"]],
    )
    await make_order(
        customer["user_id"], PaymentMode.WALLET, status="completed",
        offers={courier_a["user_id"]: bid}, accepted_couriers=[courier_a["user_id"]],
    )

    reserved = await wallet_service.reserved_amount(customer["user_id"])
    assert reserved == pytest.approx((10.0 + 1.0) * 1.1)
    assert await wallet_service.available_funds(customer["user_id"]) == pytest.approx(100.0 - 12.1)


async def test_failed_ledger_insert_leaves_no_rows(make_user, mongo):
    customer = await make_user(wallet_balance=50.0)
    courier = await make_user("courier", wallet_balance=0.0)
    await mongo.wallet_transactions.create_index("tx_id", unique=True)
    # Ligne déjà présente avec le tx_id de la jambe crédit
    await mongo.wallet_transactions.insert_one({"tx_id": "wtx_wtr_fixed_0_credit", "transfer_id": "wtr_other"})
    leg = TransferLeg(
        from_account=customer["user_id"], to_account=courier["user_id"],
        amount=20.0, kind=TransactionType.ORDER_PAYMENT,
    )

    with pytest.raises(PyMongoError):
        await wallet_service.transfer_many([leg], order_id="ord_1", transfer_id="wtr_fixed")

    assert await wallet_service.get_balance(customer["user_id"]) == 50.0
    assert await wallet_service.get_balance(courier["user_id"]) == 0.0
    assert await mongo.wallet_transactions.count_documents({"transfer_id": "wtr_fixed"}) == 0
    assert await mongo.wallet_transactions.count_documents({}) == 1
