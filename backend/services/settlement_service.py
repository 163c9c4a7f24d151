"""
Règlement d'une affectation livreur : reçu, mouvements wallet, clôture.

  distance_fee          = (pickup_km + dropoff_km) × fee_per_km
  courier_fee           = distance_fee + attente pickup + attente dropoff + avance d'achat
  platform_fee          = courier_fee × SYSTEM_COMMISSION_RATE
  total_customer_charge = courier_fee + platform_fee

Wallet : le client paie le total, le livreur reçoit courier_fee, la plateforme platform_fee.
Cash   : le livreur a encaissé en main propre, seule la commission est prélevée sur
         son wallet (solde autorisé jusqu'à CASH_BLOCK).
"""
import logging
from datetime import datetime, timezone

from config import settings
from core.exceptions import (
    AlreadyFinalized, AssignmentNotFound, BidNotFound, NotReadyForSettlement,
)
from core.utils import now_ms, round_money
from database import transaction
from models.common import OrderStatus, PaymentMode
from models.wallet import SYSTEM_ACCOUNT, TransactionType, TransferLeg
from services import order_repository, wallet_service
from services.notification_service import dispatch

logger = logging.getLogger(__name__)


def compute_receipt(order: dict, bid: dict, assignment: dict, courier: dict) -> dict:
    pickup_m = (bid.get("pickup_estimation") or {}).get("distance_m") or 0.0
    dropoff_m = (bid.get("dropoff_estimation") or {}).get("distance_m") or 0.0
    total_distance_km = (pickup_m + dropoff_m) / 1000

    distance_fee = round_money(total_distance_km * float(courier.get("fee_per_km") or 0.0))
    waiting_pickup = float(assignment.get("waiting_fee_pickup") or 0.0)
    waiting_dropoff = float(assignment.get("waiting_fee_dropoff") or 0.0)
    upfront = float(bid.get("upfront_purchase_cost") or 0.0)

    courier_fee = round_money(distance_fee + waiting_pickup + waiting_dropoff + upfront)
    platform_fee = round_money(courier_fee * settings.SYSTEM_COMMISSION_RATE)
    return {
        "total_distance_km":     round(total_distance_km, 3),
        "distance_fee":          distance_fee,
        "waiting_fee_pickup":    waiting_pickup,
        "waiting_fee_dropoff":   waiting_dropoff,
        "upfront_purchase_cost": upfront,
        "courier_fee":           courier_fee,
        "platform_fee":          platform_fee,
        "total_customer_charge": round_money(courier_fee + platform_fee),
        "payment_mode":          order["payment_mode"],
        "finalized_at":          now_ms(),
    }


def settlement_legs(order: dict, courier_id: str, receipt: dict) -> list[TransferLeg]:
    """Jambes du transfert ; les montants nuls sont omis."""
    legs = []
    if order["payment_mode"] == PaymentMode.WALLET.value:
        candidates = [
            (order["customer_id"], None, receipt["total_customer_charge"], TransactionType.ORDER_PAYMENT, 0.0),
            (None, courier_id, receipt["courier_fee"], TransactionType.ORDER_CREDIT, 0.0),
            (None, SYSTEM_ACCOUNT, receipt["platform_fee"], TransactionType.PLATFORM_FEE_TRANSFER, 0.0),
        ]
    else:
        candidates = [
            (courier_id, SYSTEM_ACCOUNT, receipt["platform_fee"],
             TransactionType.PLATFORM_FEE_TRANSFER, settings.CASH_BLOCK),
        ]
    for from_account, to_account, amount, kind, min_balance in candidates:
        if amount > 0:
            legs.append(TransferLeg(
                from_account=from_account,
                to_account=to_account,
                amount=amount,
                kind=kind,
                min_balance=min_balance,
            ))
    return legs


def _completes_order(order: dict, courier_id: str) -> bool:
    """Vrai si ce règlement est le dernier attendu pour la commande."""
    accepted = order.get("accepted_couriers") or []
    if len(accepted) < order.get("required_couriers", 1):
        return False
    couriers = order.get("couriers") or {}
    return all((couriers.get(cid) or {}).get("finalized") for cid in accepted if cid != courier_id)


async def _release_claim(order: dict, courier_id: str, receipt: dict, completed: bool) -> None:
    prefix = f"couriers.{courier_id}"
    fields = {f"{prefix}.finalized": False, f"{prefix}.receipt": None}
    if completed:
        fields["status"] = OrderStatus.IN_PROGRESS.value
        fields["completed_at"] = None
    await order_repository.update_order(
        order,
        {"$set": fields},
        extra_filter={f"{prefix}.finalized": True, f"{prefix}.receipt.finalized_at": receipt["finalized_at"]},
        check_version=False,
    )
    logger.warning(f"Règlement annulé : order={order['order_id']} courier={courier_id}")


async def _finalize_once(order_id: str, courier_id: str) -> tuple[dict, dict]:
    async with transaction() as session:
        order = await order_repository.get_order(order_id, session=session)
        assignment = (order.get("couriers") or {}).get(courier_id)
        if assignment is None or courier_id not in (order.get("accepted_couriers") or []):
            raise AssignmentNotFound()
        if assignment.get("finalized"):
            raise AlreadyFinalized()
        if not (assignment.get("pickup_confirmed") and assignment.get("dropoff_confirmed")):
            raise NotReadyForSettlement()
        bid = (order.get("offers") or {}).get(courier_id)
        if bid is None:
            raise BidNotFound()
        courier = await order_repository.get_courier(courier_id, session=session)

        receipt = compute_receipt(order, bid, assignment, courier)
        completed = _completes_order(order, courier_id)
        prefix = f"couriers.{courier_id}"
        fields = {f"{prefix}.finalized": True, f"{prefix}.receipt": receipt}
        if completed:
            fields["status"] = OrderStatus.COMPLETED.value
            fields["completed_at"] = datetime.now(timezone.utc)

        # Réclamation : un seul appel gagne, les autres voient finalized=True
        claimed = await order_repository.update_order(
            order,
            {"$set": fields},
            extra_filter={f"{prefix}.finalized": False},
            session=session,
        )

        legs = settlement_legs(order, courier_id, receipt)
        if legs:
            try:
                await wallet_service.transfer_many(
                    legs,
                    order_id=order_id,
                    transfer_id=f"stl_{order_id}_{courier_id}",
                    session=session,
                )
            except Exception:
                if session is None:
                    await _release_claim(claimed, courier_id, receipt, completed)
                raise

        await order_repository.increment_order_count(courier_id, session=session)
    return claimed, receipt


async def finalize_order(order_id: str, courier_id: str) -> dict:
    """Règle l'affectation du livreur et retourne le reçu."""
    order, receipt = await order_repository.with_retry(_finalize_once, order_id, courier_id)
    logger.info(
        f"Règlement : order={order_id} courier={courier_id} mode={receipt['payment_mode']} "
        f"courier_fee={receipt['courier_fee']:.2f} platform_fee={receipt['platform_fee']:.2f}"
    )
    if order["status"] == OrderStatus.COMPLETED.value:
        logger.info(f"Commande terminée : order={order_id}")
    dispatch(courier_id, "order_finalized", params={"courier_fee": receipt["courier_fee"]},
             ref_type="order", ref_id=order_id)
    return receipt
