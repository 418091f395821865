from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List

from ..db import get_db
from .. import models, schemas
from ..dispatch_service import list_offers_for_rider


router = APIRouter()


def get_rider(rider_id: int, db: Session) -> models.User:
    """Helper to load a rider or 404"""
    rider = db.query(models.User).filter(
        models.User.id == rider_id,
        models.User.role == models.UserRole.RIDER
    ).first()
    if not rider:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Rider not found"
        )
    return rider


# ============================================================================
# Rider Offers
# ============================================================================

@router.get("/{rider_id}/offers", response_model=List[schemas.RiderOfferOut])
def get_offers(rider_id: int, db: Session = Depends(get_db)):
    """Open offers the rider can still accept"""
    get_rider(rider_id, db)

    result = []
    for offer, order in list_offers_for_rider(db, rider_id):
        result.append(schemas.RiderOfferOut(
            offer_id=offer.id,
            order_id=order.id,
            status=offer.status,
            pickup_lat=order.pickup_lat,
            pickup_lng=order.pickup_lng,
            drop_lat=order.drop_lat,
            drop_lng=order.drop_lng,
            distance_km=order.distance_km,
            rider_earnings=order.rider_earnings,
            offer_expires_at=order.offer_expires_at,
            offered_at=offer.created_at
        ))
    return result


# ============================================================================
# Rider Location
# ============================================================================

@router.post("/{rider_id}/location", response_model=schemas.LocationOut, status_code=status.HTTP_201_CREATED)
def report_location(rider_id: int, payload: schemas.LocationReport, db: Session = Depends(get_db)):
    """Record a location ping and refresh the rider's last known position"""
    rider = get_rider(rider_id, db)

    location = models.DriverLocation(driver_id=rider.id, **payload.model_dump())
    db.add(location)
    rider.lat = payload.lat
    rider.lng = payload.lng
    db.commit()
    db.refresh(location)

    return location


@router.get("/{rider_id}/location", response_model=schemas.LocationOut)
def latest_location(rider_id: int, db: Session = Depends(get_db)):
    """Most recent location ping"""
    get_rider(rider_id, db)

    location = db.query(models.DriverLocation).filter(
        models.DriverLocation.driver_id == rider_id
    ).order_by(models.DriverLocation.created_at.desc(), models.DriverLocation.id.desc()).first()

    if not location:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No location reported"
        )
    return location
