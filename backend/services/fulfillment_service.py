"""
Suivi d'exécution par livreur : arrivées, confirmations pickup/dropoff, attente
facturée, vérification du PIN, position GPS.

Attente facturée :
  waiting_time = max(0, confirmation - arrivée - WAITING_TIMEOUT_MS)
  waiting_fee  = waiting_time / 60000 × waiting_rate
"""
import logging
from typing import Optional

from config import settings
from core.exceptions import (
    AlreadyConfirmed, AssignmentNotFound, InvalidStateError, OrderClosed, ValidationFailed,
)
from core.utils import now_ms, round_money
from models.common import OrderStatus
from services import order_repository
from services.distance_service import haversine_m
from services.notification_service import dispatch

logger = logging.getLogger(__name__)

PICKUP = "pickup"
DROPOFF = "dropoff"

_ACTIVE = (OrderStatus.OPEN.value, OrderStatus.IN_PROGRESS.value)


def _assignment(order: dict, courier_id: str) -> dict:
    assignment = (order.get("couriers") or {}).get(courier_id)
    if assignment is None or courier_id not in (order.get("accepted_couriers") or []):
        raise AssignmentNotFound()
    if order["status"] not in _ACTIVE:
        raise OrderClosed("La commande n'est plus active")
    return assignment


def _check_stage(assignment: dict, stage: str) -> None:
    if stage == DROPOFF and not assignment.get("pickup_confirmed"):
        raise InvalidStateError("Le pickup doit être confirmé avant le dropoff")


def waiting_time_ms(arrival: int, confirmed_at: int) -> int:
    return max(0, confirmed_at - arrival - settings.WAITING_TIMEOUT_MS)


def waiting_fee(waiting_ms: int, waiting_rate: float) -> float:
    return round_money(waiting_ms / 60_000 * (waiting_rate or 0.0))


# ── Arrivées ──────────────────────────────────────────────────────────────────

async def _record_arrival_once(order_id: str, courier_id: str, stage: str) -> int:
    order = await order_repository.get_order(order_id)
    assignment = _assignment(order, courier_id)
    _check_stage(assignment, stage)
    if assignment.get(f"{stage}_arrival"):
        return assignment[f"{stage}_arrival"]

    arrival = now_ms()
    await order_repository.update_order(
        order,
        {"$set": {f"couriers.{courier_id}.{stage}_arrival": arrival}},
        extra_filter={f"couriers.{courier_id}.{stage}_arrival": None},
    )
    logger.info(f"Arrivée {stage} : order={order_id} courier={courier_id}")
    return arrival


async def record_pickup_arrival(order_id: str, courier_id: str) -> int:
    """Première arrivée au pickup ; les appels suivants ne réécrivent jamais."""
    return await order_repository.with_retry(_record_arrival_once, order_id, courier_id, PICKUP)


async def record_dropoff_arrival(order_id: str, courier_id: str) -> int:
    return await order_repository.with_retry(_record_arrival_once, order_id, courier_id, DROPOFF)


# ── Confirmations ─────────────────────────────────────────────────────────────

async def _confirm_once(order_id: str, courier_id: str, stage: str, proof: dict) -> tuple[dict, dict]:
    order = await order_repository.get_order(order_id)
    assignment = _assignment(order, courier_id)
    _check_stage(assignment, stage)
    if assignment.get(f"{stage}_confirmed"):
        raise AlreadyConfirmed()

    courier = await order_repository.get_courier(courier_id)
    confirmed_at = now_ms()
    # Arrivée absente : enregistrée dans la même écriture que la confirmation
    arrival = assignment.get(f"{stage}_arrival") or confirmed_at
    waited = waiting_time_ms(arrival, confirmed_at)
    fee = waiting_fee(waited, courier.get("waiting_rate") or 0.0)

    prefix = f"couriers.{courier_id}"
    fields = {
        f"{prefix}.{stage}_arrival":      arrival,
        f"{prefix}.{stage}_confirmed":    True,
        f"{prefix}.{stage}_confirmed_at": confirmed_at,
        f"{prefix}.waiting_time_{stage}": waited,
        f"{prefix}.waiting_fee_{stage}":  fee,
    }
    for key, value in proof.items():
        fields[f"{prefix}.{key}"] = value

    await order_repository.update_order(
        order,
        {"$set": fields},
        extra_filter={f"{prefix}.{stage}_confirmed": False},
    )
    return order, {"waiting_time": waited, "waiting_fee": fee}


async def confirm_pickup(
    order_id: str,
    courier_id: str,
    package_image_ref: str,
    receipt_ref: Optional[str] = None,
    paid_amount: float = 0.0,
) -> dict:
    """Confirme la collecte (photo du colis, ticket vendeur, montant avancé)."""
    proof = {
        "package_image_ref":  package_image_ref,
        "pickup_receipt_ref": receipt_ref,
        "pickup_paid_amount": paid_amount,
    }
    order, result = await order_repository.with_retry(_confirm_once, order_id, courier_id, PICKUP, proof)
    logger.info(
        f"Pickup confirmé : order={order_id} courier={courier_id} "
        f"attente={result['waiting_time']}ms frais={result['waiting_fee']:.2f}"
    )
    dispatch(order["customer_id"], "pickup_confirmed", ref_type="order", ref_id=order_id)
    return result


async def confirm_dropoff(
    order_id: str,
    courier_id: str,
    dropoff_image_ref: str,
    receipt_ref: Optional[str] = None,
    paid_amount: float = 0.0,
) -> dict:
    proof = {
        "dropoff_image_ref":   dropoff_image_ref,
        "dropoff_receipt_ref": receipt_ref,
        "dropoff_paid_amount": paid_amount,
    }
    order, result = await order_repository.with_retry(_confirm_once, order_id, courier_id, DROPOFF, proof)
    logger.info(
        f"Dropoff confirmé : order={order_id} courier={courier_id} "
        f"attente={result['waiting_time']}ms frais={result['waiting_fee']:.2f}"
    )
    dispatch(order["customer_id"], "dropoff_confirmed", ref_type="order", ref_id=order_id)
    return result


# ── PIN de remise ─────────────────────────────────────────────────────────────

async def _verify_pin_once(order_id: str, courier_id: str, pin: str) -> bool:
    order = await order_repository.get_order(order_id)
    assignment = _assignment(order, courier_id)
    if assignment.get("pickup_verified"):
        return True
    if str(assignment.get("pickup_pin")) != pin.strip():
        raise ValidationFailed("PIN de pickup invalide")
    await order_repository.update_order(
        order,
        {"$set": {f"couriers.{courier_id}.pickup_verified": True}},
    )
    return True


async def verify_pickup_pin(order_id: str, courier_id: str, pin: str) -> bool:
    """Le vendeur / client authentifie la remise avec le PIN reçu par le livreur."""
    return await order_repository.with_retry(_verify_pin_once, order_id, courier_id, pin)


# ── Position GPS ──────────────────────────────────────────────────────────────

def should_record(assignment: dict, new_location: dict, now: int) -> bool:
    """Nouveau point seulement si déplacement > 50 m ou > 60 s depuis le dernier."""
    last_at = assignment.get("last_location_at")
    if last_at is None or assignment.get("current_location") is None:
        return True
    moved = haversine_m(assignment["current_location"], new_location)
    return moved > settings.LOCATION_MIN_DISTANCE_M or now - last_at > settings.LOCATION_MIN_INTERVAL_MS


async def _update_location_once(order_id: str, courier_id: str, location: dict) -> bool:
    order = await order_repository.get_order(order_id)
    assignment = _assignment(order, courier_id)
    now = now_ms()
    if not should_record(assignment, location, now):
        return False

    prefix = f"couriers.{courier_id}"
    await order_repository.update_order(
        order,
        {
            "$set": {f"{prefix}.current_location": location, f"{prefix}.last_location_at": now},
            "$push": {f"{prefix}.route_history": {**location, "timestamp": now}},
        },
    )
    return True


async def update_courier_location(order_id: str, courier_id: str, lat: float, lng: float) -> dict:
    """Suivi en direct, limité par affectation (pas d'état global)."""
    location = {"lat": lat, "lng": lng}
    recorded = await order_repository.with_retry(_update_location_once, order_id, courier_id, location)
    if recorded:
        await order_repository.update_user(courier_id, {"current_location": location})
    return {"recorded": recorded, "location": location}
