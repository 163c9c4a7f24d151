from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class UserRole(str, Enum):
    CUSTOMER = "customer"
    COURIER  = "courier"
    ADMIN    = "admin"


class OrderStatus(str, Enum):
    OPEN        = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"
    CANCELLED   = "cancelled"


class PaymentMode(str, Enum):
    CASH   = "cash"
    WALLET = "wallet"


class GeoPin(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class Location(GeoPin):
    address: Optional[str] = None
    phone:   Optional[str] = None   # contact sur place


class RouteEstimation(BaseModel):
    distance_m: float   # mètres
    duration_s: float   # secondes
