"""
Désignation du livreur principal :
  poids = 0.3 × rating + 0.7 × order_count
Le poids le plus élevé gagne ; à égalité, le premier accepté.
"""
import logging
from typing import Optional

from config import settings
from services import order_repository

logger = logging.getLogger(__name__)


def courier_weight(courier: dict) -> float:
    return (
        settings.PRIMARY_RATING_WEIGHT * float(courier.get("rating") or 0.0)
        + settings.PRIMARY_ORDER_COUNT_WEIGHT * float(courier.get("order_count") or 0)
    )


def select_primary(accepted_couriers: list[str], couriers: dict[str, dict]) -> Optional[str]:
    """Fonction pure : parcours dans l'ordre d'acceptation, égalité → le premier."""
    primary_id, best = None, float("-inf")
    for courier_id in accepted_couriers:
        courier = couriers.get(courier_id)
        if courier is None:
            continue
        weight = courier_weight(courier)
        if weight > best:
            primary_id, best = courier_id, weight
    return primary_id


async def _designate_once(order_id: str) -> Optional[str]:
    order = await order_repository.get_order(order_id)
    if order.get("primary_courier_id"):
        return order["primary_courier_id"]

    accepted = order.get("accepted_couriers") or []
    couriers = await order_repository.get_users(accepted)
    primary_id = select_primary(accepted, couriers)
    if primary_id is None:
        return None

    await order_repository.update_order(
        order,
        {"$set": {
            "primary_courier_id": primary_id,
            **{f"couriers.{cid}.is_primary": cid == primary_id for cid in accepted},
        }},
    )
    logger.info(f"Livreur principal désigné : order={order_id} courier={primary_id}")
    return primary_id


async def designate(order_id: str) -> Optional[str]:
    """Désigne (une seule fois) le livreur principal ; rappel sans effet ensuite."""
    return await order_repository.with_retry(_designate_once, order_id)
