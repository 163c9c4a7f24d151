from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
from models.common import GeoPin, UserRole


class User(BaseModel):
    user_id:             str
    name:                str
    phone:               Optional[str] = None
    role:                UserRole = UserRole.CUSTOMER
    is_active:           bool     = True
    # Wallet (modifié uniquement par le ledger)
    wallet_balance:      float    = 0.0
    # Livreur
    fee_per_km:          float    = 0.0
    waiting_rate:        float    = 0.0    # par minute
    rating:              float    = 0.0
    order_count:         int      = 0
    current_location:    Optional[GeoPin] = None
    max_pickup_distance: Optional[float]  = None   # mètres
    available_budget:    float    = 0.0
    # Préférences
    language:            str      = "en"
    fcm_token:           Optional[str] = None
    # Timestamps
    created_at:          datetime
    updated_at:          datetime


class ProfileUpdate(BaseModel):
    name:                Optional[str]   = None
    language:            Optional[str]   = None
    fcm_token:           Optional[str]   = None
    fee_per_km:          Optional[float] = Field(None, ge=0)
    waiting_rate:        Optional[float] = Field(None, ge=0)
    max_pickup_distance: Optional[float] = Field(None, gt=0)
    available_budget:    Optional[float] = Field(None, ge=0)
    current_location:    Optional[GeoPin] = None
