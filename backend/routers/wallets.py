"""
Router wallets : solde, historique, dépôt client, wallet plateforme.
"""
from fastapi import APIRouter, Depends

from core.dependencies import get_current_user, require_admin
from models.common import UserRole
from models.wallet import SYSTEM_ACCOUNT, DepositRequest, TransactionPage
from services import wallet_service

router = APIRouter()


@router.get("/me", summary="Mon wallet")
async def get_my_wallet(current_user: dict = Depends(get_current_user)):
    user_id = current_user["user_id"]
    wallet = {
        "account_id": user_id,
        "balance":    await wallet_service.get_balance(user_id),
    }
    if current_user.get("role") == UserRole.CUSTOMER.value:
        wallet["reserved"] = round(await wallet_service.reserved_amount(user_id), 2)
        wallet["available"] = round(wallet["balance"] - wallet["reserved"], 2)
    return wallet


@router.get("/me/transactions", response_model=TransactionPage, summary="Historique des transactions")
async def get_my_transactions(
    skip: int = 0,
    limit: int = 50,
    current_user: dict = Depends(get_current_user),
):
    return await wallet_service.list_transactions(current_user["user_id"], skip=skip, limit=limit)


@router.post("/deposit", summary="Créditer un wallet client (admin)")
async def deposit(body: DepositRequest, _admin=Depends(require_admin)):
    return await wallet_service.deposit(body.customer_id, body.amount)


@router.get("/system", summary="Wallet plateforme (admin)")
async def get_system_wallet(skip: int = 0, limit: int = 50, _admin=Depends(require_admin)):
    history = await wallet_service.list_transactions(SYSTEM_ACCOUNT, skip=skip, limit=limit)
    return {"balance": await wallet_service.get_system_balance(), **history}
