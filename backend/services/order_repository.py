"""
Accès aux agrégats Order et User.

Toute mutation d'une commande passe par `update_order`, qui n'écrit que si la
`version` lue est toujours la version en base (verrou optimiste). Les appelants
rejouent leur lecture-modification-écriture via `with_retry`.
"""
import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from pymongo import ReturnDocument

from config import settings
from core.exceptions import (
    Busy, ConcurrencyConflict, CourierNotFound, OrderNotFound, UserNotFound,
)
from database import db
from models.common import UserRole

logger = logging.getLogger(__name__)


# ── Orders ────────────────────────────────────────────────────────────────────

async def find_order(order_id: str, session=None) -> Optional[dict]:
    return await db.orders.find_one({"order_id": order_id}, {"_id": 0}, session=session)


async def get_order(order_id: str, session=None) -> dict:
    order = await find_order(order_id, session=session)
    if not order:
        raise OrderNotFound()
    return order


async def insert_order(doc: dict) -> dict:
    await db.orders.insert_one(doc)
    return {k: v for k, v in doc.items() if k != "_id"}


async def update_order(
    order: dict,
    update: dict,
    extra_filter: Optional[dict] = None,
    session=None,
    check_version: bool = True,
) -> dict:
    """
    Applique `update` si la commande est toujours à la version lue.
    Incrémente `version`, horodate `updated_at`, retourne le document à jour.
    Lève ConcurrencyConflict si la version (ou `extra_filter`) ne correspond plus.
    `check_version=False` : seul `extra_filter` conditionne l'écriture.
    """
    query = {"order_id": order["order_id"]}
    if check_version:
        query["version"] = order.get("version", 0)
    if extra_filter:
        query.update(extra_filter)

    update = {op: dict(fields) for op, fields in update.items()}
    update.setdefault("$set", {})["updated_at"] = datetime.now(timezone.utc)
    update.setdefault("$inc", {})["version"] = 1

    # Sans projection : le document relu est celui écrit, par _id
    updated = await db.orders.find_one_and_update(
        query,
        update,
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    if updated is None:
        raise ConcurrencyConflict(order_id=order["order_id"])
    updated.pop("_id", None)
    return updated


async def list_orders(query: dict, limit: Optional[int] = 200, session=None) -> list[dict]:
    """`limit=None` : toutes les commandes correspondantes."""
    cursor = db.orders.find(query, {"_id": 0}, session=session).sort("created_at", -1)
    if limit is not None:
        cursor = cursor.limit(limit)
    return await cursor.to_list(length=limit)


async def with_retry(operation: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
    """
    Rejoue `operation` tant qu'elle lève ConcurrencyConflict,
    au plus MAX_WRITE_RETRIES fois, puis lève Busy.
    """
    attempts = max(1, settings.MAX_WRITE_RETRIES)
    for attempt in range(1, attempts + 1):
        try:
            return await operation(*args, **kwargs)
        except ConcurrencyConflict as e:
            target = e.extra.get("order_id") or e.extra.get("account_id")
            logger.warning(f"Conflit d'écriture sur {target} (tentative {attempt}/{attempts})")
            if attempt < attempts:
                await asyncio.sleep(random.uniform(0, 0.01 * attempt))
    raise Busy()


# ── Users ─────────────────────────────────────────────────────────────────────

async def find_user(user_id: str, session=None) -> Optional[dict]:
    return await db.users.find_one({"user_id": user_id}, {"_id": 0}, session=session)


async def get_user(user_id: str, session=None) -> dict:
    user = await find_user(user_id, session=session)
    if not user:
        raise UserNotFound()
    return user


async def get_courier(courier_id: str, session=None) -> dict:
    user = await find_user(courier_id, session=session)
    if not user or user.get("role") != UserRole.COURIER.value:
        raise CourierNotFound()
    return user


async def get_users(user_ids: Iterable[str], session=None) -> dict[str, dict]:
    """{user_id: user} pour les ids existants."""
    ids = list(user_ids)
    if not ids:
        return {}
    cursor = db.users.find({"user_id": {"$in": ids}}, {"_id": 0}, session=session)
    return {u["user_id"]: u async for u in cursor}


async def update_user(user_id: str, fields: dict) -> dict:
    """Mise à jour de champs de profil. Jamais wallet_balance (réservé au ledger)."""
    fields = {k: v for k, v in fields.items() if k != "wallet_balance"}
    fields["updated_at"] = datetime.now(timezone.utc)
    updated = await db.users.find_one_and_update(
        {"user_id": user_id},
        {"$set": fields},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise UserNotFound()
    return updated


async def increment_order_count(courier_id: str, session=None) -> None:
    await db.users.update_one(
        {"user_id": courier_id},
        {"$inc": {"order_count": 1}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        session=session,
    )
