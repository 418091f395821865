from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional

from ..db import get_db, get_session_factory
from .. import models, schemas
from .. import dispatch_service
from ..otp_service import get_order_otp
from ..pricing import fare_breakdown
from ..sweeper import sweep_due_orders
from ..utils import haversine_km, validate_coordinates


router = APIRouter()


def _dispatch_out(result: dispatch_service.DispatchResult, message: str) -> schemas.DispatchOut:
    return schemas.DispatchOut(
        order=schemas.OrderOut.model_validate(result.order),
        status=result.order.status,
        current_rider=schemas.RiderCandidateOut.model_validate(result.rider) if result.rider else None,
        message=message,
    )


# ============================================================================
# Pricing
# ============================================================================

@router.post("/quote", response_model=schemas.QuoteOut)
def quote(p: schemas.QuoteRequest):
    """Price a route without creating an order"""
    pickup = validate_coordinates(p.pickup_lat, p.pickup_lng, "pickup")
    drop = validate_coordinates(p.drop_lat, p.drop_lng, "drop")
    b = fare_breakdown(haversine_km(pickup[0], pickup[1], drop[0], drop[1]))
    return schemas.QuoteOut(
        distance_km=b.distance_km,
        total_price=b.fare.total_price,
        commission=b.fare.commission,
        rider_earnings=b.fare.rider_earnings,
        base_fare=b.base_fare,
        distance_fare=b.distance_fare,
        commission_rate=b.commission_rate,
        tiers=[schemas.TierSegmentOut(**vars(t)) for t in b.tiers],
    )


# ============================================================================
# Orders
# ============================================================================

@router.post("", response_model=schemas.DispatchOut, status_code=201)
def create_order(p: schemas.CreateOrder, db: Session = Depends(get_db)):
    """Create an order and offer it to the best available rider"""
    result = dispatch_service.create_order(
        db,
        user_id=p.user_id,
        pickup_lat=p.pickup_lat,
        pickup_lng=p.pickup_lng,
        drop_lat=p.drop_lat,
        drop_lng=p.drop_lng,
        package_details=p.package_details,
    )
    if result.rider is None:
        return _dispatch_out(result, "No riders available right now")
    return _dispatch_out(result, "Order created successfully! We are finding riders for you.")


@router.get("", response_model=List[schemas.OrderOut])
def list_orders(user_id: int, status: Optional[str] = None, db: Session = Depends(get_db)):
    """Requester's order history, newest first"""
    return dispatch_service.list_orders_for_user(db, user_id, status)


@router.post("/expire-offers", response_model=schemas.SweepOut)
def expire_offers(session_factory=Depends(get_session_factory)):
    """Advance every order whose offer or dispatch budget has run out"""
    return sweep_due_orders(session_factory)


@router.get("/{order_id}", response_model=schemas.OrderOut)
def get_order(order_id: int, db: Session = Depends(get_db)):
    return dispatch_service.get_order(db, order_id)


@router.get("/{order_id}/status", response_model=schemas.OrderStatusOut)
def get_order_status(order_id: int, db: Session = Depends(get_db)):
    return dispatch_service.order_status(db, order_id)


@router.get("/{order_id}/timer", response_model=schemas.OrderStatusOut)
def poll_timer(order_id: int, db: Session = Depends(get_db)):
    """Client poll: advance the order if its offer ran out, then report the timers"""
    dispatch_service.expire_if_due(db, order_id)
    return dispatch_service.order_status(db, order_id)


@router.post("/{order_id}/advance", response_model=schemas.ProgressionOut)
def advance_order(order_id: int, db: Session = Depends(get_db)):
    return dispatch_service.expire_if_due(db, order_id)


@router.post("/{order_id}/respond", response_model=schemas.DispatchOut)
def respond(order_id: int, p: schemas.RespondToOffer, db: Session = Depends(get_db)):
    """Rider accepts or declines the order"""
    result = dispatch_service.respond_to_offer(db, order_id, p.rider_id, p.action)
    if result.order.status == models.OrderStatus.ACCEPTED:
        return _dispatch_out(result, "Order accepted")
    if result.rider is not None:
        return _dispatch_out(result, "Offer sent to next rider")
    return _dispatch_out(result, "No more riders available")


@router.post("/{order_id}/cancel", response_model=schemas.OrderOut)
def cancel(order_id: int, p: schemas.CancelOrder, db: Session = Depends(get_db)):
    return dispatch_service.cancel_order(db, order_id, p.user_id)


# ============================================================================
# OTP
# ============================================================================

@router.get("/{order_id}/otp", response_model=schemas.OtpOut)
def get_otp(order_id: int, db: Session = Depends(get_db)):
    dispatch_service.get_order(db, order_id)
    return get_order_otp(db, order_id)


@router.post("/{order_id}/otp/verify", response_model=schemas.OrderOut)
def verify_otp(order_id: int, p: schemas.OtpVerify, db: Session = Depends(get_db)):
    return dispatch_service.verify_otp(db, order_id, p.stage, p.code)
