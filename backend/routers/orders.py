"""
Router orders : cycle de vie d'une commande (création, offres, acceptation,
pickup / dropoff, position GPS, règlement).
"""
from fastapi import APIRouter, Depends, Request

from config import settings
from core.dependencies import get_current_user, require_courier, require_customer
from core.exceptions import forbidden_exception
from core.rate_limit import limiter
from models.common import UserRole
from models.order import (
    AcceptanceResult, Bid, BidCreate, DropoffConfirmation, LocationUpdate, Order, OrderCreate,
    PickupConfirmation, Receipt, WaitingResult,
)
from services import (
    acceptance_service, bidding_service, fulfillment_service, order_repository,
    order_service, settlement_service,
)

router = APIRouter()


def _is_admin(user: dict) -> bool:
    return user.get("role") == UserRole.ADMIN.value


async def _owned_order(order_id: str, current_user: dict) -> dict:
    order = await order_repository.get_order(order_id)
    if not _is_admin(current_user) and order["customer_id"] != current_user["user_id"]:
        raise forbidden_exception("Cette commande ne vous appartient pas")
    return order


@router.post("", summary="Créer une commande")
async def create_order(body: OrderCreate, current_user: dict = Depends(require_customer)):
    return await order_service.create_order(body, current_user["user_id"])


@router.get("/mine", summary="Mes commandes (client)")
async def my_orders(limit: int = 50, current_user: dict = Depends(require_customer)):
    orders = await order_service.list_customer_orders(current_user["user_id"], limit=limit)
    return {"orders": orders, "total": len(orders)}


@router.get("/available", summary="Commandes accessibles (livreur)")
async def available_orders(current_user: dict = Depends(require_courier)):
    orders = await order_service.get_affordable_orders(current_user["user_id"])
    return {"orders": orders, "total": len(orders)}


@router.get("/{order_id}", response_model=Order, summary="Détail commande")
async def get_order(order_id: str, current_user: dict = Depends(get_current_user)):
    order = await order_repository.get_order(order_id)
    user_id = current_user["user_id"]
    if _is_admin(current_user) or order["customer_id"] == user_id:
        return order
    if user_id in (order.get("offers") or {}):
        # Un livreur ne voit que sa propre affectation (PIN compris)
        couriers = order.get("couriers") or {}
        order["couriers"] = {user_id: couriers[user_id]} if user_id in couriers else {}
        return order
    raise forbidden_exception()


@router.post("/{order_id}/cancel", summary="Annuler une commande")
async def cancel_order(order_id: str, current_user: dict = Depends(require_customer)):
    order = await _owned_order(order_id, current_user)
    return await order_service.cancel_order(order_id, order["customer_id"])


# ── Offres et acceptation ─────────────────────────────────────────────────────

@router.post("/{order_id}/bids", response_model=Bid, summary="Faire une offre (livreur)")
@limiter.limit(settings.BID_RATE_LIMIT)
async def place_bid(
    request: Request,
    order_id: str,
    body: BidCreate,
    current_user: dict = Depends(require_courier),
):
    return await bidding_service.place_bid(
        order_id, current_user["user_id"], body.bid_amount, body.bid_message,
    )


@router.post("/{order_id}/accept/{courier_id}", response_model=AcceptanceResult, summary="Accepter l'offre d'un livreur")
async def accept_bid(order_id: str, courier_id: str, current_user: dict = Depends(require_customer)):
    await _owned_order(order_id, current_user)
    return await acceptance_service.accept_bid(order_id, courier_id)


# ── Exécution (livreur) ───────────────────────────────────────────────────────

@router.post("/{order_id}/pickup/arrival", summary="Arrivée au pickup")
async def pickup_arrival(order_id: str, current_user: dict = Depends(require_courier)):
    arrival = await fulfillment_service.record_pickup_arrival(order_id, current_user["user_id"])
    return {"pickup_arrival": arrival}


@router.post("/{order_id}/pickup/confirm", response_model=WaitingResult, summary="Confirmer la collecte")
async def confirm_pickup(
    order_id: str,
    body: PickupConfirmation,
    current_user: dict = Depends(require_courier),
):
    return await fulfillment_service.confirm_pickup(
        order_id, current_user["user_id"],
        body.package_image_ref, body.receipt_ref, body.paid_amount,
    )


@router.post("/{order_id}/dropoff/arrival", summary="Arrivée au dropoff")
async def dropoff_arrival(order_id: str, current_user: dict = Depends(require_courier)):
    arrival = await fulfillment_service.record_dropoff_arrival(order_id, current_user["user_id"])
    return {"dropoff_arrival": arrival}


@router.post("/{order_id}/dropoff/confirm", response_model=WaitingResult, summary="Confirmer la livraison")
async def confirm_dropoff(
    order_id: str,
    body: DropoffConfirmation,
    current_user: dict = Depends(require_courier),
):
    return await fulfillment_service.confirm_dropoff(
        order_id, current_user["user_id"],
        body.dropoff_image_ref, body.receipt_ref, body.paid_amount,
    )


@router.put("/{order_id}/location", summary="Position GPS du livreur")
async def update_location(
    order_id: str,
    body: LocationUpdate,
    current_user: dict = Depends(require_courier),
):
    return await fulfillment_service.update_courier_location(
        order_id, current_user["user_id"], body.lat, body.lng,
    )


# ── Règlement ─────────────────────────────────────────────────────────────────

@router.post("/{order_id}/finalize/{courier_id}", response_model=Receipt, summary="Régler un livreur")
async def finalize_order(order_id: str, courier_id: str, current_user: dict = Depends(get_current_user)):
    """Client de la commande, livreur concerné ou admin."""
    if not _is_admin(current_user) and current_user["user_id"] != courier_id:
        await _owned_order(order_id, current_user)
    return await settlement_service.finalize_order(order_id, courier_id)
