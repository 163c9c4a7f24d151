"""
Service wallet : soldes, transferts atomiques, historique append-only, réservations.

Comptes : un user_id (users.wallet_balance) ou SYSTEM_ACCOUNT (system_wallet.balance).
Un débit est un $inc conditionnel : le filtre porte la précondition de solde,
donc vérification et écriture ne font qu'une seule opération côté MongoDB.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from config import settings
from core.exceptions import InsufficientFunds, UserNotFound, ValidationFailed
from core.utils import new_id, now_ms, round_money
from database import db, transaction
from models.common import OrderStatus, PaymentMode
from models.wallet import SYSTEM_ACCOUNT, Direction, TransactionType, TransferLeg
from services import order_repository

logger = logging.getLogger(__name__)


def _account(account_id: str):
    """(collection, filtre, champ de solde) pour un compte."""
    if account_id == SYSTEM_ACCOUNT:
        return db.system_wallet, {"wallet_id": SYSTEM_ACCOUNT}, "balance"
    return db.users, {"user_id": account_id}, "wallet_balance"


async def get_balance(account_id: str, session=None) -> float:
    """Solde courant ; un compte inexistant vaut 0."""
    collection, query, field = _account(account_id)
    doc = await collection.find_one(query, {"_id": 0, field: 1}, session=session)
    if not doc:
        return 0.0
    return float(doc.get(field) or 0.0)


async def get_system_balance() -> float:
    return await get_balance(SYSTEM_ACCOUNT)


async def _apply(account_id: str, delta: float, min_balance: float = 0.0, session=None) -> None:
    """
    $inc du solde. Pour un débit, le filtre exige solde + delta >= min_balance.
    Le wallet système est créé au premier crédit.
    """
    collection, query, field = _account(account_id)
    query = dict(query)
    if delta < 0:
        query[field] = {"$gte": min_balance - delta}

    result = await collection.update_one(
        query,
        {"$inc": {field: delta}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        upsert=(account_id == SYSTEM_ACCOUNT and delta > 0),
        session=session,
    )
    if result.matched_count or result.upserted_id is not None:
        return

    balance = await get_balance(account_id, session=session)
    if delta < 0 and (account_id == SYSTEM_ACCOUNT or await order_repository.find_user(account_id, session=session)):
        shortfall = (min_balance - delta) - balance
        raise InsufficientFunds(
            f"Solde insuffisant sur le compte {account_id}",
            shortfall=shortfall,
            account_id=account_id,
        )
    raise UserNotFound(f"Compte {account_id} introuvable")


async def _compensate(applied: list[tuple[str, float]], session=None) -> None:
    """
    Annule les $inc déjà appliqués, du plus récent au plus ancien.
    Les écritures du transfert ont été retirées avant l'appel.
    """
    for account_id, delta in reversed(applied):
        collection, query, field = _account(account_id)
        await collection.update_one(
            query,
            {"$inc": {field: -delta}, "$set": {"updated_at": datetime.now(timezone.utc)}},
            session=session,
        )
        logger.warning(f"Compensation ledger : compte={account_id} delta={-delta}")


def _entry(transfer_id: str, index: int, account_id: str, kind: TransactionType,
           direction: Direction, amount: float, order_id: Optional[str], ts: int) -> dict:
    return {
        "tx_id":       f"wtx_{transfer_id}_{index}_{direction.value}",
        "transfer_id": transfer_id,
        "account_id":  account_id,
        "tx_type":     kind.value,
        "direction":   direction.value,
        "amount":      amount,
        "order_id":    order_id,
        "timestamp":   ts,
        "created_at":  datetime.now(timezone.utc),
    }


async def transfer_many(
    legs: Iterable[TransferLeg],
    order_id: Optional[str] = None,
    transfer_id: Optional[str] = None,
    session=None,
) -> list[dict]:
    """
    Applique toutes les jambes ou aucune.
    Avec une session MongoDB, l'abandon de la transaction annule tout ; sans
    session, les jambes déjà appliquées sont compensées avant de relever l'erreur.
    Retourne les écritures ajoutées à wallet_transactions.
    """
    legs = list(legs)
    if not legs:
        raise ValidationFailed("Transfert vide")
    for leg in legs:
        if leg.amount <= 0:
            raise ValidationFailed("Le montant d'un transfert doit être positif")

    transfer_id = transfer_id or new_id("wtr")
    if session is None:
        async with transaction() as own_session:
            return await _run_transfer(legs, order_id, transfer_id, own_session)
    return await _run_transfer(legs, order_id, transfer_id, session)


async def _run_transfer(legs: list[TransferLeg], order_id, transfer_id: str, session) -> list[dict]:
    applied: list[tuple[str, float]] = []
    entries: list[dict] = []
    ts = now_ms()
    try:
        for index, leg in enumerate(legs):
            amount = round_money(leg.amount)
            if leg.from_account:
                await _apply(leg.from_account, -amount, leg.min_balance, session=session)
                applied.append((leg.from_account, -amount))
                entries.append(_entry(transfer_id, index, leg.from_account, leg.kind,
                                      Direction.DEBIT, amount, order_id, ts))
            if leg.to_account:
                await _apply(leg.to_account, amount, session=session)
                applied.append((leg.to_account, amount))
                entries.append(_entry(transfer_id, index, leg.to_account, leg.kind,
                                      Direction.CREDIT, amount, order_id, ts))
        await db.wallet_transactions.insert_many(entries, ordered=True, session=session)
    except Exception:
        if session is None and applied:
            await db.wallet_transactions.delete_many({"transfer_id": transfer_id})
            await _compensate(applied)
        raise

    for leg in legs:
        logger.info(
            f"Transfert {transfer_id} : {leg.kind.value} {leg.from_account or '-'} → "
            f"{leg.to_account or '-'} montant={round_money(leg.amount)}"
        )
    return [{k: v for k, v in e.items() if k != "_id"} for e in entries]


async def transfer(
    from_account: Optional[str],
    to_account: Optional[str],
    amount: float,
    order_id: Optional[str],
    kind: TransactionType,
    min_balance: float = 0.0,
) -> list[dict]:
    """Transfert simple d'un compte (ou de l'extérieur) vers un compte (ou l'extérieur)."""
    if not from_account and not to_account:
        raise ValidationFailed("Un transfert doit toucher au moins un compte")
    leg = TransferLeg(
        from_account=from_account,
        to_account=to_account,
        amount=amount,
        kind=kind,
        min_balance=min_balance,
    )
    return await transfer_many([leg], order_id=order_id)


async def deposit(customer_id: str, amount: float) -> dict:
    """Dépôt sur le wallet client (argent reçu hors plateforme)."""
    await order_repository.get_user(customer_id)
    entries = await transfer(None, customer_id, amount, None, TransactionType.DEPOSIT)
    balance = await get_balance(customer_id)
    logger.info(f"Dépôt : client={customer_id} montant={amount} nouveau solde={balance}")
    return {"transaction": entries[0], "new_balance": balance}


async def list_transactions(account_id: str, skip: int = 0, limit: int = 50) -> dict:
    cursor = db.wallet_transactions.find(
        {"account_id": account_id},
        {"_id": 0},
    ).sort("created_at", -1).skip(skip).limit(limit)
    txs = await cursor.to_list(length=limit)
    total = await db.wallet_transactions.count_documents({"account_id": account_id})
    return {"transactions": txs, "total": total}


# ── Réservations ──────────────────────────────────────────────────────────────

def reserved_for_bid(bid: dict, waiting_rate: float) -> float:
    """(coût estimé + marge d'attente) × (1 + commission)."""
    safety_margin = settings.WAITING_SAFETY_FACTOR * (waiting_rate or 0.0)
    return (bid["final_estimated_cost"] + safety_margin) * (1 + settings.SYSTEM_COMMISSION_RATE)


async def reserved_amount(customer_id: str, session=None) -> float:
    """
    Somme retenue sur le wallet client : offres acceptées de ses commandes
    wallet ouvertes ou en cours, hors livreurs déjà réglés (déjà débités).
    """
    orders = await order_repository.list_orders(
        {
            "customer_id":  customer_id,
            "payment_mode": PaymentMode.WALLET.value,
            "status":       {"$in": [OrderStatus.OPEN.value, OrderStatus.IN_PROGRESS.value]},
        },
        limit=None,
        session=session,
    )
    pending: list[tuple[dict, str]] = []
    for order in orders:
        offers = order.get("offers") or {}
        couriers = order.get("couriers") or {}
        for courier_id in order.get("accepted_couriers") or []:
            bid = offers.get(courier_id)
            if bid and not (couriers.get(courier_id) or {}).get("finalized"):
                pending.append((bid, courier_id))

    rates = await order_repository.get_users({cid for _, cid in pending}, session=session)
    return sum(
        reserved_for_bid(bid, (rates.get(cid) or {}).get("waiting_rate", 0.0))
        for bid, cid in pending
    )


async def available_funds(customer_id: str, session=None) -> float:
    return await get_balance(customer_id, session=session) - await reserved_amount(customer_id, session=session)
