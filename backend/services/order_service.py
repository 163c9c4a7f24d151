"""
Service commandes : création, annulation, lecture, filtrage des commandes
proposées à un livreur.
"""
import logging
from datetime import datetime, timezone

from config import settings
from core.exceptions import OrderNotCancellable, ValidationFailed
from core.utils import new_id
from models.common import OrderStatus, PaymentMode
from models.order import OrderCreate
from services import order_repository
from services.distance_service import haversine_m
from services.notification_service import dispatch

logger = logging.getLogger(__name__)


async def create_order(data: OrderCreate, customer_id: str) -> dict:
    """Crée une commande `open`, sans offre ni livreur."""
    if data.required_couriers < 1:
        raise ValidationFailed("required_couriers doit être ≥ 1")
    if data.needed_budget < 0:
        raise ValidationFailed("needed_budget doit être ≥ 0")

    now = datetime.now(timezone.utc)
    order_doc = {
        "order_id":            new_id("ord"),
        "customer_id":         customer_id,
        "pickup_location":     data.pickup_location.model_dump(),
        "dropoff_location":    data.dropoff_location.model_dump(),
        "payment_mode":        data.payment_mode.value,
        "needed_budget":       float(data.needed_budget),
        "required_couriers":   data.required_couriers,
        "max_pickup_distance": data.max_pickup_distance,
        "package_details":     data.package_details,
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
    order = await order_repository.insert_order(order_doc)
    logger.info(
        f"Commande créée : order={order['order_id']} client={customer_id} "
        f"mode={order['payment_mode']} couriers={order['required_couriers']}"
    )
    return order


async def list_customer_orders(customer_id: str, limit: int = 50) -> list[dict]:
    return await order_repository.list_orders({"customer_id": customer_id}, limit=limit)


async def _cancel_once(order_id: str, customer_id: str) -> dict:
    order = await order_repository.get_order(order_id)
    if order["customer_id"] != customer_id:
        raise OrderNotCancellable("Seul le client de la commande peut l'annuler")
    if order["status"] != OrderStatus.OPEN.value or order.get("accepted_couriers"):
        raise OrderNotCancellable()
    return await order_repository.update_order(
        order,
        {"$set": {
            "status":       OrderStatus.CANCELLED.value,
            "bid_expired":  True,
            "cancelled_at": datetime.now(timezone.utc),
        }},
    )


async def cancel_order(order_id: str, customer_id: str) -> dict:
    """Annule une commande ouverte sans livreur accepté ; les enchérisseurs sont prévenus."""
    order = await order_repository.with_retry(_cancel_once, order_id, customer_id)
    for courier_id in order.get("offers") or {}:
        dispatch(courier_id, "order_cancelled", ref_type="order", ref_id=order_id)
    logger.info(f"Commande annulée : order={order_id}")
    return order


def is_cash_blocked(courier: dict) -> bool:
    """Livreur au plancher CASH_BLOCK : il ne voit plus que les commandes wallet."""
    return float(courier.get("wallet_balance") or 0.0) <= settings.CASH_BLOCK


async def get_affordable_orders(courier_id: str) -> list[dict]:
    """
    Commandes ouvertes accessibles au livreur (parcours linéaire) :
    budget d'avance suffisant, pickup à portée du livreur et de la commande,
    commandes cash exclues si le livreur est bloqué.
    """
    courier = await order_repository.get_courier(courier_id)
    available_budget = float(courier.get("available_budget") or 0.0)
    courier_max = courier.get("max_pickup_distance")
    location = courier.get("current_location")

    orders = await order_repository.list_orders({"status": OrderStatus.OPEN.value}, limit=None)
    if is_cash_blocked(courier):
        orders = [o for o in orders if o.get("payment_mode") == PaymentMode.WALLET.value]

    result = []
    for order in orders:
        if courier_id in (order.get("offers") or {}):
            continue
        if float(order.get("needed_budget") or 0.0) > available_budget:
            continue
        distance = haversine_m(location, order.get("pickup_location"))
        if courier_max is not None and distance > courier_max:
            continue
        if order.get("max_pickup_distance") and distance > order["max_pickup_distance"]:
            continue
        if distance == float("inf"):
            continue
        order["pickup_distance_m"] = round(distance)
        result.append(order)

    result.sort(key=lambda o: o["pickup_distance_m"])
    return result
