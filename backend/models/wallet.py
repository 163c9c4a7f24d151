from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


SYSTEM_ACCOUNT = "system"   # compte de la plateforme (collection system_wallet)


class TransactionType(str, Enum):
    DEPOSIT               = "deposit"
    ORDER_PAYMENT         = "order_payment"           # débit client
    ORDER_CREDIT          = "order_credit"            # crédit livreur
    PLATFORM_FEE_TRANSFER = "platform_fee_transfer"   # commission → plateforme


class Direction(str, Enum):
    DEBIT  = "debit"
    CREDIT = "credit"


class WalletTransaction(BaseModel):
    tx_id:       str
    transfer_id: str
    account_id:  str
    tx_type:     TransactionType
    direction:   Direction
    amount:      float           # toujours > 0, le sens est dans `direction`
    order_id:    Optional[str] = None
    timestamp:   int
    created_at:  datetime


class TransactionPage(BaseModel):
    transactions: List[WalletTransaction]
    total:        int


class TransferLeg(BaseModel):
    from_account: Optional[str] = None   # None : argent entrant (dépôt)
    to_account:   Optional[str] = None
    amount:       float = Field(gt=0)
    kind:         TransactionType
    min_balance:  float = 0.0            # solde minimal après débit


class DepositRequest(BaseModel):
    customer_id: str
    amount:      float = Field(gt=0)
