"""
Service offres : estimation du coût d'une offre, contrôle des fonds réservables
du client (commandes wallet), enregistrement de l'offre.

Formule :
  estimated_distance_fee = dropoff_km × fee_per_km
  final_estimated_cost   = estimated_distance_fee + needed_budget
  total_estimated        = (final_estimated_cost + 0.5 × waiting_rate) × (1 + commission)
"""
import logging
import math

from core.exceptions import (
    DuplicateBid, InsufficientCustomerFunds, OrderClosed, ValidationFailed,
)
from core.utils import now_ms, round_money
from models.common import OrderStatus, PaymentMode
from services import distance_service, order_repository, wallet_service
from services.notification_service import dispatch

logger = logging.getLogger(__name__)


async def _dropoff_estimation(order: dict) -> dict:
    """Estimation pickup → dropoff : celle en cache sur la commande, sinon calculée."""
    cached = order.get("dropoff_estimation")
    if cached:
        return cached
    return await distance_service.estimate(order["pickup_location"], order["dropoff_location"])


def estimate_bid(order: dict, courier: dict, pickup_estimation: dict, dropoff_estimation: dict,
                 bid_amount: float, bid_message: str = None) -> dict:
    distance_km = dropoff_estimation["distance_m"] / 1000
    estimated_distance_fee = distance_km * float(courier.get("fee_per_km") or 0.0)
    upfront_purchase_cost = float(order.get("needed_budget") or 0.0)
    return {
        "bid_amount":             bid_amount,
        "bid_message":            bid_message,
        "pickup_estimation":      pickup_estimation,
        "dropoff_estimation":     dropoff_estimation,
        "estimated_distance_fee": round_money(estimated_distance_fee),
        "upfront_purchase_cost":  upfront_purchase_cost,
        "final_estimated_cost":   round_money(estimated_distance_fee + upfront_purchase_cost),
        "timestamp":              now_ms(),
    }


async def _place_bid_once(order_id: str, courier_id: str, bid_amount: float, bid_message: str) -> tuple[dict, dict]:
    order = await order_repository.get_order(order_id)
    if order["status"] != OrderStatus.OPEN.value or order.get("bid_expired"):
        raise OrderClosed()
    if courier_id in (order.get("offers") or {}):
        raise DuplicateBid()

    courier = await order_repository.get_courier(courier_id)
    dropoff_estimation = await _dropoff_estimation(order)
    pickup_estimation = await distance_service.estimate(courier.get("current_location"), order["pickup_location"])
    if math.isinf(pickup_estimation["distance_m"]) or math.isinf(dropoff_estimation["distance_m"]):
        raise ValidationFailed("Position du livreur ou de la commande inconnue")

    bid = estimate_bid(order, courier, pickup_estimation, dropoff_estimation, bid_amount, bid_message)

    if order["payment_mode"] == PaymentMode.WALLET.value:
        total_estimated = wallet_service.reserved_for_bid(bid, courier.get("waiting_rate") or 0.0)
        available = await wallet_service.available_funds(order["customer_id"])
        if total_estimated > available:
            logger.info(
                f"Offre refusée (fonds client) : order={order_id} courier={courier_id} "
                f"estimé={total_estimated:.2f} disponible={available:.2f}"
            )
            raise InsufficientCustomerFunds(
                shortfall=total_estimated - available,
                total_estimated=round_money(total_estimated),
                available_funds=round_money(available),
            )

    fields = {f"offers.{courier_id}": bid}
    if not order.get("dropoff_estimation"):
        # Mise en cache avec l'offre : une offre refusée ne modifie pas la commande
        fields["dropoff_estimation"] = dropoff_estimation
    await order_repository.update_order(
        order,
        {"$set": fields},
        extra_filter={f"offers.{courier_id}": {"$exists": False}},
    )
    return order, bid


async def place_bid(order_id: str, courier_id: str, bid_amount: float, bid_message: str = None) -> dict:
    """Enregistre l'offre du livreur. Une seule offre par livreur et par commande."""
    order, bid = await order_repository.with_retry(_place_bid_once, order_id, courier_id, bid_amount, bid_message)
    logger.info(
        f"Offre enregistrée : order={order_id} courier={courier_id} "
        f"coût estimé={bid['final_estimated_cost']:.2f}"
    )
    dispatch(courier_id, "bid_placed", ref_type="order", ref_id=order_id)
    dispatch(order["customer_id"], "bid_received", ref_type="order", ref_id=order_id)
    return bid
