"""
Service acceptation : ajout d'un livreur à la commande, quorum, livreur principal.

Ajout, test du quorum, passage en `in_progress` et désignation du principal
sont écrits en une seule mise à jour conditionnée par la version de la commande :
deux acceptations concurrentes ne peuvent pas occuper la même dernière place.
"""
import logging

from core.exceptions import BidNotFound, OrderClosed, QuorumAlreadyReached
from core.security import generate_pickup_pin
from models.common import OrderStatus
from models.order import Assignment
from services import order_repository
from services.notification_service import dispatch
from services.primary_courier import select_primary

logger = logging.getLogger(__name__)


def _result(order: dict, courier_id: str) -> dict:
    accepted = order.get("accepted_couriers") or []
    return {
        "order_id":           order["order_id"],
        "courier_id":         courier_id,
        "assignment":         order["couriers"][courier_id],
        "accepted_couriers":  accepted,
        "quorum_reached":     len(accepted) >= order["required_couriers"],
        "status":             order["status"],
        "primary_courier_id": order.get("primary_courier_id"),
    }


async def _accept_once(order_id: str, courier_id: str) -> tuple[dict, bool]:
    order = await order_repository.get_order(order_id)
    accepted = list(order.get("accepted_couriers") or [])

    if courier_id in accepted:
        return order, False
    if order["status"] in (OrderStatus.CANCELLED.value, OrderStatus.COMPLETED.value):
        raise OrderClosed()
    if order["status"] != OrderStatus.OPEN.value or len(accepted) >= order["required_couriers"]:
        raise QuorumAlreadyReached()
    if courier_id not in (order.get("offers") or {}):
        raise BidNotFound()

    courier = await order_repository.get_courier(courier_id)
    assignment = Assignment(
        pickup_pin=generate_pickup_pin(),
        initial_location=courier.get("current_location"),
    ).model_dump()

    accepted.append(courier_id)
    fields = {"accepted_couriers": accepted}
    quorum_reached = len(accepted) == order["required_couriers"]
    if quorum_reached:
        couriers = await order_repository.get_users(accepted)
        primary_id = select_primary(accepted, couriers)
        assignment["is_primary"] = primary_id == courier_id
        fields.update({
            "status":             OrderStatus.IN_PROGRESS.value,
            "bid_expired":        True,
            "primary_courier_id": primary_id,
        })
        for cid in accepted[:-1]:
            fields[f"couriers.{cid}.is_primary"] = cid == primary_id
    fields[f"couriers.{courier_id}"] = assignment

    updated = await order_repository.update_order(
        order,
        {"$set": fields},
        extra_filter={"status": OrderStatus.OPEN.value},
    )
    return updated, True


async def accept_bid(order_id: str, courier_id: str) -> dict:
    """
    Accepte l'offre d'un livreur. Idempotent : un livreur déjà accepté
    récupère son affectation inchangée.
    """
    order, changed = await order_repository.with_retry(_accept_once, order_id, courier_id)
    result = _result(order, courier_id)
    if not changed:
        return result

    logger.info(
        f"Livreur accepté : order={order_id} courier={courier_id} "
        f"({len(result['accepted_couriers'])}/{order['required_couriers']})"
    )
    dispatch(
        courier_id, "bid_accepted",
        params={"pickup_pin": result["assignment"]["pickup_pin"]},
        ref_type="order", ref_id=order_id,
    )

    if result["quorum_reached"]:
        logger.info(f"Quorum atteint : order={order_id} principal={result['primary_courier_id']}")
        for bidder_id in order.get("offers") or {}:
            if bidder_id not in result["accepted_couriers"]:
                dispatch(bidder_id, "bid_expired", ref_type="order", ref_id=order_id)
        dispatch(order["customer_id"], "order_active", ref_type="order", ref_id=order_id)
        if result["primary_courier_id"]:
            dispatch(result["primary_courier_id"], "primary_courier", ref_type="order", ref_id=order_id)
    return result
