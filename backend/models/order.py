from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from models.common import GeoPin, Location, OrderStatus, PaymentMode, RouteEstimation


class Bid(BaseModel):
    bid_amount:             float
    bid_message:            Optional[str] = None
    pickup_estimation:      RouteEstimation   # position du livreur → pickup
    dropoff_estimation:     RouteEstimation   # pickup → dropoff (copie de la commande)
    estimated_distance_fee: float
    upfront_purchase_cost:  float             # = needed_budget au moment de l'offre
    final_estimated_cost:   float
    timestamp:              int               # epoch ms


class Receipt(BaseModel):
    total_distance_km:     float
    distance_fee:          float
    waiting_fee_pickup:    float
    waiting_fee_dropoff:   float
    upfront_purchase_cost: float
    courier_fee:           float
    platform_fee:          float
    total_customer_charge: float
    payment_mode:          PaymentMode
    finalized_at:          int


class Assignment(BaseModel):
    pickup_pin:           str
    is_primary:           bool = False
    initial_location:     Optional[GeoPin] = None
    # Pickup
    pickup_verified:      bool  = False            # PIN vérifié à la remise
    pickup_arrival:       Optional[int] = None     # epoch ms, premier appel gagnant
    pickup_confirmed:     bool  = False
    pickup_confirmed_at:  Optional[int] = None
    waiting_time_pickup:  int   = 0                # ms facturables
    waiting_fee_pickup:   float = 0.0
    package_image_ref:    Optional[str] = None
    pickup_receipt_ref:   Optional[str] = None
    pickup_paid_amount:   Optional[float] = None
    # Dropoff
    dropoff_arrival:      Optional[int] = None
    dropoff_confirmed:    bool  = False
    dropoff_confirmed_at: Optional[int] = None
    waiting_time_dropoff: int   = 0
    waiting_fee_dropoff:  float = 0.0
    dropoff_image_ref:    Optional[str] = None
    dropoff_receipt_ref:  Optional[str] = None
    dropoff_paid_amount:  Optional[float] = None
    # Suivi GPS (throttle par affectation)
    current_location:     Optional[GeoPin] = None
    last_location_at:     Optional[int] = None
    route_history:        List[dict] = []
    # Règlement
    finalized:            bool = False
    receipt:              Optional[Receipt] = None


class Order(BaseModel):
    order_id:            str
    customer_id:         str
    pickup_location:     Location
    dropoff_location:    Location
    payment_mode:        PaymentMode
    needed_budget:       float = 0.0
    required_couriers:   int   = 1
    max_pickup_distance: Optional[float] = None   # mètres
    package_details:     Optional[str] = None
    status:              OrderStatus = OrderStatus.OPEN
    accepted_couriers:   List[str] = []
    offers:              Dict[str, Bid] = {}
    couriers:            Dict[str, Assignment] = {}
    dropoff_estimation:  Optional[RouteEstimation] = None
    bid_expired:         bool = False
    primary_courier_id:  Optional[str] = None
    version:             int  = 0
    created_at:          datetime
    updated_at:          datetime
    completed_at:        Optional[datetime] = None
    cancelled_at:        Optional[datetime] = None


class OrderCreate(BaseModel):
    pickup_location:     Location
    dropoff_location:    Location
    payment_mode:        PaymentMode = PaymentMode.CASH
    needed_budget:       float = Field(0.0, ge=0)
    required_couriers:   int   = Field(1, ge=1)
    max_pickup_distance: Optional[float] = Field(None, gt=0)
    package_details:     Optional[str] = None


class BidCreate(BaseModel):
    bid_amount:  float = Field(ge=0)
    bid_message: Optional[str] = None


class PickupConfirmation(BaseModel):
    package_image_ref: str              # photo du colis
    receipt_ref:       Optional[str] = None   # ticket du vendeur
    paid_amount:       float = Field(0.0, ge=0)


class DropoffConfirmation(BaseModel):
    dropoff_image_ref: str
    receipt_ref:       Optional[str] = None
    paid_amount:       float = Field(0.0, ge=0)


class LocationUpdate(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class WaitingResult(BaseModel):
    waiting_time: int     # ms
    waiting_fee:  float


class AcceptanceResult(BaseModel):
    order_id:          str
    courier_id:        str
    assignment:        Assignment
    accepted_couriers: List[str]
    quorum_reached:    bool
    status:            OrderStatus
    primary_courier_id: Optional[str] = None
