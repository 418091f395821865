from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
from .models import OrderStatus, OfferStatus


# ============================================================================
# Pricing Schemas
# ============================================================================

class QuoteRequest(BaseModel):
    """Route to price; coordinates are validated by the service"""
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    drop_lat: Optional[float] = None
    drop_lng: Optional[float] = None


class TierSegmentOut(BaseModel):
    range: str
    rate_per_km: float
    distance_km: float
    fare: float


class QuoteOut(BaseModel):
    distance_km: float
    total_price: int
    commission: int
    rider_earnings: int
    base_fare: int
    distance_fare: int
    commission_rate: int  # percent
    tiers: List[TierSegmentOut]


# ============================================================================
# Order Schemas
# ============================================================================

class CreateOrder(QuoteRequest):
    user_id: Optional[int] = None
    package_details: Optional[Dict[str, Any]] = None


class OrderOut(BaseModel):
    id: int
    user_id: int
    driver_id: Optional[int]
    pickup_lat: float
    pickup_lng: float
    drop_lat: float
    drop_lng: float
    distance_km: float
    total_price: int
    commission: int
    rider_earnings: int
    package_details: Optional[Dict[str, Any]]
    status: OrderStatus
    offer_expires_at: Optional[datetime]
    created_at: datetime
    class Config:
        from_attributes = True


class RiderCandidateOut(BaseModel):
    """Rider currently holding the offer"""
    rider_id: int
    distance_to_pickup: float
    on_route: bool
    class Config:
        from_attributes = True


class DispatchOut(BaseModel):
    order: OrderOut
    status: OrderStatus
    current_rider: Optional[RiderCandidateOut]
    message: str


class OrderStatusOut(BaseModel):
    order_id: int
    status: OrderStatus
    driver_id: Optional[int]
    current_rider_id: Optional[int]
    offer_expires_at: Optional[datetime]
    offer_seconds_remaining: int
    total_seconds_remaining: int
    class Config:
        from_attributes = True


class ProgressionOut(BaseModel):
    order_id: int
    progressed: bool
    status: OrderStatus
    rider_id: Optional[int]
    message: str
    class Config:
        from_attributes = True


class SweepOut(BaseModel):
    checked: int
    progressed: List[int]
    failed: List[int]
    class Config:
        from_attributes = True


# ============================================================================
# Offer Response Schemas
# ============================================================================

class RespondToOffer(BaseModel):
    rider_id: int
    action: str = Field(..., pattern=r'^(accept|accepted|decline|declined)$')


class CancelOrder(BaseModel):
    user_id: int


# ============================================================================
# OTP Schemas
# ============================================================================

class OtpOut(BaseModel):
    order_id: int
    pickup_otp: str
    delivery_otp: str
    pickup_verified: bool
    delivery_verified: bool
    class Config:
        from_attributes = True


class OtpVerify(BaseModel):
    stage: str = Field(..., pattern=r'^(pickup|delivery)$')
    code: str = Field(..., pattern=r'^\d{4}$')


# ============================================================================
# Rider Schemas
# ============================================================================

class RiderOfferOut(BaseModel):
    """Rider's view of an open offer"""
    offer_id: int
    order_id: int
    status: OfferStatus
    pickup_lat: float
    pickup_lng: float
    drop_lat: float
    drop_lng: float
    distance_km: float
    rider_earnings: int
    offer_expires_at: Optional[datetime]
    offered_at: datetime


class LocationReport(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    order_id: Optional[int] = None
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None


class LocationOut(BaseModel):
    id: int
    driver_id: int
    order_id: Optional[int]
    lat: float
    lng: float
    accuracy: Optional[float]
    heading: Optional[float]
    speed: Optional[float]
    created_at: datetime
    class Config:
        from_attributes = True
