"""
Dispatch Service - order lifecycle and offer sequencing

- Order creation with distance-tiered pricing
- One offer at a time, ranked on-route riders first
- 120 s per-rider window bounded by the 30-minute order budget
- Decline / expiry progression to the next rider, cancellation when none is left
- Acceptance with OTP generation

Every transition runs in one transaction. The order row is read FOR UPDATE and
each write is conditioned on the state it was read in (order status, and the
offer row still being ``offered``), so concurrent triggers for the same order
cannot both advance it.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .core.exceptions import (
    ConflictError, DispatchError, InternalError, NoRidersAvailable, NotFoundError, ValidationError,
)
from .core.settings import settings
from .db import transaction
from .eligibility import RiderCandidate, rank_riders
from .notifications import get_notifier
from .otp_service import check_code, create_order_otp
from .pricing import calculate_fare
from .utils import haversine_km, validate_coordinates

logger = logging.getLogger(__name__)

OPEN_STATUSES = (models.OrderStatus.PENDING, models.OrderStatus.ASSIGNED)

ACCEPT = "accept"
DECLINE = "decline"
_DECISIONS = {
    "accept": ACCEPT,
    "accepted": ACCEPT,
    "decline": DECLINE,
    "declined": DECLINE,
}

_UNSET = object()


@dataclass
class DispatchResult:
    """Order after a dispatch step, plus the rider now holding its offer (if any)"""
    order: models.Order
    rider: Optional[RiderCandidate] = None


@dataclass
class ProgressionResult:
    order_id: int
    progressed: bool
    status: models.OrderStatus
    rider_id: Optional[int] = None
    message: str = ""


@dataclass
class OrderStatusView:
    order_id: int
    status: models.OrderStatus
    driver_id: Optional[int]
    current_rider_id: Optional[int]
    offer_expires_at: Optional[datetime]
    offer_seconds_remaining: int
    total_seconds_remaining: int


@dataclass
class _Outbox:
    """Notifications held back until the transaction commits"""
    created: List[Tuple[int, int, datetime]] = field(default_factory=list)
    revoked: List[Tuple[int, int]] = field(default_factory=list)

    def flush(self) -> None:
        notifier = get_notifier()
        for order_id, rider_id in self.revoked:
            notifier.offer_revoked(order_id, rider_id)
        for order_id, rider_id, expires_at in self.created:
            notifier.offer_created(order_id, rider_id, expires_at)


# ============================================================================
# Helpers
# ============================================================================

def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.utcnow()


def offer_window() -> timedelta:
    return timedelta(seconds=settings.OFFER_TIMEOUT_SECONDS)


def order_deadline(order: models.Order) -> datetime:
    """End of the order's global dispatch budget"""
    return order.created_at + timedelta(seconds=settings.ORDER_TIMEOUT_SECONDS)


def _seconds_until(moment: Optional[datetime], now: datetime) -> int:
    if moment is None:
        return 0
    return max(0, int((moment - now).total_seconds()))


@contextmanager
def _atomic(db: Session, action: str, order_id: Optional[int] = None):
    try:
        with transaction(db):
            yield
    except IntegrityError as exc:
        # Unique offer indexes caught a concurrent writer
        logger.info("Concurrent %s on order %s rejected by constraint", action, order_id)
        raise ConflictError("Order changed concurrently, re-fetch", {"order_id": order_id}) from exc
    except SQLAlchemyError as exc:
        logger.exception("Persistence failure during %s for order %s", action, order_id)
        raise InternalError("Could not persist dispatch state, retry the request", {"order_id": order_id}) from exc


def _lock_order(db: Session, order_id: int) -> models.Order:
    order = (
        db.query(models.Order)
        .filter(models.Order.id == order_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not order:
        raise NotFoundError("Order not found", {"order_id": order_id})
    return order


def _transition(db: Session, order: models.Order, expected, values: dict, expected_deadline=_UNSET) -> None:
    """Conditional update of the order row; raises ConflictError if it moved underneath us"""
    query = db.query(models.Order).filter(
        models.Order.id == order.id,
        models.Order.status.in_(expected),
    )
    if expected_deadline is not _UNSET:
        if expected_deadline is None:
            query = query.filter(models.Order.offer_expires_at.is_(None))
        else:
            query = query.filter(models.Order.offer_expires_at == expected_deadline)

    updated = query.update(values, synchronize_session=False)
    if updated != 1:
        raise ConflictError(
            "Order is no longer in the expected state",
            {"order_id": order.id, "expected": [s.value for s in expected]},
        )
    db.refresh(order)


def _close_offer(db: Session, offer: models.OrderOffer, new_status: models.OfferStatus) -> None:
    """Move an offer out of ``offered``; the single open offer is the per-order claim token"""
    updated = (
        db.query(models.OrderOffer)
        .filter(
            models.OrderOffer.id == offer.id,
            models.OrderOffer.status == models.OfferStatus.OFFERED,
        )
        .update({"status": new_status}, synchronize_session=False)
    )
    if updated != 1:
        raise ConflictError("Offer is no longer open", {"order_id": offer.order_id, "rider_id": offer.rider_id})
    db.refresh(offer)


def current_offer(db: Session, order_id: int) -> Optional[models.OrderOffer]:
    return db.query(models.OrderOffer).filter(
        models.OrderOffer.order_id == order_id,
        models.OrderOffer.status == models.OfferStatus.OFFERED,
    ).first()


def _eligible_riders(db: Session, order: models.Order) -> List[models.User]:
    """Online riders with a known position who were never offered this order"""
    already_offered = select(models.OrderOffer.rider_id).where(models.OrderOffer.order_id == order.id)
    riders = db.query(models.User).filter(
        models.User.role == models.UserRole.RIDER,
        models.User.is_online == True,  # noqa: E712
        models.User.lat.isnot(None),
        models.User.lng.isnot(None),
        models.User.id.not_in(already_offered),
    ).all()

    if not riders:
        raise NoRidersAvailable("No more riders available", {"order_id": order.id})
    return riders


def _cancel(db: Session, order: models.Order, reason: str, outbox: _Outbox, expected=OPEN_STATUSES) -> None:
    offer = current_offer(db, order.id)
    if offer:
        _close_offer(db, offer, models.OfferStatus.EXPIRED)
        outbox.revoked.append((order.id, offer.rider_id))

    _transition(db, order, expected, {
        "status": models.OrderStatus.CANCELLED,
        "offer_expires_at": None,
    })
    logger.info("Order %s cancelled: %s", order.id, reason)


def _offer_next(db: Session, order: models.Order, now: datetime, outbox: _Outbox) -> Optional[RiderCandidate]:
    if order.status not in OPEN_STATUSES:
        raise ConflictError("Order is not open for offers", {"order_id": order.id, "status": order.status.value})
    if current_offer(db, order.id):
        raise ConflictError("Order already has an open offer", {"order_id": order.id})

    deadline = order_deadline(order)
    if now >= deadline:
        _cancel(db, order, "dispatch budget exhausted", outbox)
        return None

    try:
        riders = _eligible_riders(db, order)
    except NoRidersAvailable as exc:
        _cancel(db, order, exc.message, outbox)
        return None

    ranked = rank_riders(riders, (order.pickup_lat, order.pickup_lng), (order.drop_lat, order.drop_lng))
    candidate = ranked[0]

    # Never run past the global budget
    expires_at = min(now + offer_window(), deadline)

    db.add(models.OrderOffer(
        order_id=order.id,
        rider_id=candidate.rider_id,
        status=models.OfferStatus.OFFERED,
        created_at=now,
    ))
    db.flush()

    _transition(db, order, OPEN_STATUSES, {
        "status": models.OrderStatus.ASSIGNED,
        "offer_expires_at": expires_at,
    })
    outbox.created.append((order.id, candidate.rider_id, expires_at))

    logger.info(
        "Order %s offered to rider %s (%s, %.2f km to pickup, %d candidates left)",
        order.id, candidate.rider_id, "on-route" if candidate.on_route else "off-route",
        candidate.distance_to_pickup, len(ranked) - 1,
    )
    return candidate


# ============================================================================
# Dispatch operations
# ============================================================================

def create_order(
    db: Session,
    user_id: int,
    pickup_lat: float,
    pickup_lng: float,
    drop_lat: float,
    drop_lng: float,
    package_details: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> DispatchResult:
    """
    Price and persist a new order, then offer it to the best rider.

    Returns the order (assigned, or cancelled when no rider is online) and
    the rider holding the first offer.
    """
    if user_id is None:
        raise ValidationError("User ID is required")
    pickup = validate_coordinates(pickup_lat, pickup_lng, "pickup")
    drop = validate_coordinates(drop_lat, drop_lng, "drop")

    requester = db.query(models.User).filter(models.User.id == user_id).first()
    if not requester:
        raise NotFoundError("User not found", {"user_id": user_id})

    now = _now(now)
    distance = haversine_km(pickup[0], pickup[1], drop[0], drop[1])
    fare = calculate_fare(distance)
    outbox = _Outbox()

    with _atomic(db, "create_order"):
        order = models.Order(
            user_id=user_id,
            pickup_lat=pickup[0],
            pickup_lng=pickup[1],
            drop_lat=drop[0],
            drop_lng=drop[1],
            distance_km=round(distance, 2),
            total_price=fare.total_price,
            commission=fare.commission,
            rider_earnings=fare.rider_earnings,
            package_details=dict(package_details or {}),
            status=models.OrderStatus.PENDING,
            created_at=now,
        )
        db.add(order)
        db.flush()
        logger.info("Order %s created: %.2f km, total %d", order.id, order.distance_km, order.total_price)

        candidate = _offer_next(db, order, now, outbox)

    outbox.flush()
    return DispatchResult(order=order, rider=candidate)


def offer_next(db: Session, order_id: int, now: Optional[datetime] = None) -> DispatchResult:
    """Offer an open order (with no outstanding offer) to the next rider, or cancel it"""
    now = _now(now)
    outbox = _Outbox()
    with _atomic(db, "offer_next", order_id):
        order = _lock_order(db, order_id)
        candidate = _offer_next(db, order, now, outbox)
    outbox.flush()
    return DispatchResult(order=order, rider=candidate)


def respond_to_offer(
    db: Session,
    order_id: int,
    rider_id: int,
    decision: str,
    now: Optional[datetime] = None,
) -> DispatchResult:
    """
    Rider accepts or declines their open offer.

    Accept locks the order to the rider and generates the OTP pair. Decline
    moves the order to the next rider immediately. A response after the offer
    deadline is stale: the order is progressed and ConflictError is raised.
    """
    action = _DECISIONS.get((decision or "").lower())
    if action is None:
        raise ValidationError(f"Unknown action: {decision}")
    if rider_id is None:
        raise ValidationError("Rider ID is required")

    now = _now(now)
    outbox = _Outbox()
    candidate = None
    stale = False

    with _atomic(db, "respond_to_offer", order_id):
        order = _lock_order(db, order_id)
        offer = db.query(models.OrderOffer).filter(
            models.OrderOffer.order_id == order_id,
            models.OrderOffer.rider_id == rider_id,
        ).populate_existing().first()

        # Expired by a sweep, poll or cancel: a stale response
        if offer and offer.status == models.OfferStatus.EXPIRED:
            raise ConflictError(
                "Offer has expired",
                {"order_id": order_id, "status": order.status.value},
            )

        if order.status != models.OrderStatus.ASSIGNED:
            raise NotFoundError(
                "Order is not waiting for riders",
                {"order_id": order_id, "status": order.status.value},
            )
        if not offer or offer.status != models.OfferStatus.OFFERED:
            raise NotFoundError("No open offer for this rider", {"order_id": order_id, "rider_id": rider_id})

        if now >= order_deadline(order) or (order.offer_expires_at is not None and now > order.offer_expires_at):
            stale = True
        elif action == ACCEPT:
            _accept(db, order, offer, outbox)
        else:
            _close_offer(db, offer, models.OfferStatus.DECLINED)
            logger.info("Rider %s declined order %s", rider_id, order_id)
            candidate = _offer_next(db, order, now, outbox)

    if stale:
        progression = expire_if_due(db, order_id, now)
        raise ConflictError(
            "Offer has expired",
            {"order_id": order_id, "status": progression.status.value},
        )

    outbox.flush()
    return DispatchResult(order=order, rider=candidate)


def _accept(db: Session, order: models.Order, offer: models.OrderOffer, outbox: _Outbox) -> None:
    _close_offer(db, offer, models.OfferStatus.ACCEPTED)

    siblings = db.query(models.OrderOffer).filter(
        models.OrderOffer.order_id == order.id,
        models.OrderOffer.id != offer.id,
        models.OrderOffer.status == models.OfferStatus.OFFERED,
    ).all()
    for sibling in siblings:
        _close_offer(db, sibling, models.OfferStatus.EXPIRED)
        outbox.revoked.append((order.id, sibling.rider_id))

    _transition(
        db, order, (models.OrderStatus.ASSIGNED,),
        {
            "status": models.OrderStatus.ACCEPTED,
            "driver_id": offer.rider_id,
            "offer_expires_at": None,
        },
        expected_deadline=order.offer_expires_at,
    )
    create_order_otp(db, order)
    logger.info("Rider %s accepted order %s", offer.rider_id, order.id)


def expire_if_due(db: Session, order_id: int, now: Optional[datetime] = None) -> ProgressionResult:
    """
    Advance an assigned order whose offer (or whole budget) has run out.

    Idempotent: a call that finds nothing due, or loses a race to another
    caller, changes nothing and reports ``progressed=False``.
    """
    now = _now(now)
    outbox = _Outbox()

    try:
        with _atomic(db, "expire_if_due", order_id):
            order = _lock_order(db, order_id)
            result = _expire_locked(db, order, now, outbox)
    except ConflictError:
        order = db.query(models.Order).filter(models.Order.id == order_id).populate_existing().first()
        if not order:
            raise NotFoundError("Order not found", {"order_id": order_id})
        logger.info("Order %s already progressed by another caller", order_id)
        offer = current_offer(db, order_id)
        return ProgressionResult(
            order_id=order_id,
            progressed=False,
            status=order.status,
            rider_id=offer.rider_id if offer else order.driver_id,
            message="Already progressed",
        )

    outbox.flush()
    return result


def _expire_locked(db: Session, order: models.Order, now: datetime, outbox: _Outbox) -> ProgressionResult:
    if order.status != models.OrderStatus.ASSIGNED:
        return ProgressionResult(order.id, False, order.status, order.driver_id, "Order is not waiting for riders")

    if now >= order_deadline(order):
        _cancel(db, order, "dispatch budget exhausted", outbox, expected=(models.OrderStatus.ASSIGNED,))
        return ProgressionResult(order.id, True, order.status, None, "Order timed out")

    offer = current_offer(db, order.id)
    if offer and order.offer_expires_at is not None and now <= order.offer_expires_at:
        return ProgressionResult(order.id, False, order.status, offer.rider_id, "Waiting for rider")

    if offer:
        _close_offer(db, offer, models.OfferStatus.EXPIRED)
        outbox.revoked.append((order.id, offer.rider_id))
        logger.info("Offer for order %s to rider %s expired", order.id, offer.rider_id)

    candidate = _offer_next(db, order, now, outbox)
    if candidate is None:
        return ProgressionResult(order.id, True, order.status, None, "No more riders available")
    return ProgressionResult(order.id, True, order.status, candidate.rider_id, "Offer sent to next rider")


# ============================================================================
# Requester / rider actions
# ============================================================================

def cancel_order(db: Session, order_id: int, user_id: int, now: Optional[datetime] = None) -> models.Order:
    """Requester withdraws an order that no rider has accepted yet"""
    outbox = _Outbox()
    with _atomic(db, "cancel_order", order_id):
        order = _lock_order(db, order_id)
        if order.user_id != user_id:
            raise NotFoundError("Order not found", {"order_id": order_id})
        if order.status not in OPEN_STATUSES:
            raise ConflictError(
                f"Order is already {order.status.value}",
                {"order_id": order_id, "status": order.status.value},
            )
        _cancel(db, order, "cancelled by requester", outbox)
    outbox.flush()
    return order


def verify_otp(db: Session, order_id: int, stage: str, code: str) -> models.Order:
    """Check a pickup/delivery code; the delivery code completes the order"""
    with _atomic(db, "verify_otp", order_id):
        order = _lock_order(db, order_id)
        if order.status != models.OrderStatus.ACCEPTED:
            raise ConflictError(
                "Order is not in progress",
                {"order_id": order_id, "status": order.status.value},
            )
        otp = order.otp
        if otp is None:
            raise NotFoundError("OTPs not found for this order", {"order_id": order_id})

        check_code(otp, stage, code)
        if stage == "delivery":
            _transition(db, order, (models.OrderStatus.ACCEPTED,), {"status": models.OrderStatus.DELIVERED})
            logger.info("Order %s delivered by rider %s", order.id, order.driver_id)
    return order


# ============================================================================
# Read side
# ============================================================================

def get_order(db: Session, order_id: int) -> models.Order:
    order = db.query(models.Order).filter(models.Order.id == order_id).first()
    if not order:
        raise NotFoundError("Order not found", {"order_id": order_id})
    return order


def order_status(db: Session, order_id: int, now: Optional[datetime] = None) -> OrderStatusView:
    now = _now(now)
    order = get_order(db, order_id)
    offer = current_offer(db, order_id) if order.status == models.OrderStatus.ASSIGNED else None

    waiting = order.status in OPEN_STATUSES
    return OrderStatusView(
        order_id=order.id,
        status=order.status,
        driver_id=order.driver_id,
        current_rider_id=offer.rider_id if offer else None,
        offer_expires_at=order.offer_expires_at,
        offer_seconds_remaining=_seconds_until(order.offer_expires_at, now),
        total_seconds_remaining=_seconds_until(order_deadline(order), now) if waiting else 0,
    )


def list_orders_for_user(db: Session, user_id: int, status: Optional[str] = None) -> List[models.Order]:
    query = db.query(models.Order).filter(
        models.Order.user_id == user_id,
        models.Order.status.in_(models.HISTORY_STATUSES),
    )

    if status and status != "all":
        try:
            order_status_filter = models.OrderStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid status: {status}")
        query = query.filter(models.Order.status == order_status_filter)

    return query.order_by(models.Order.created_at.desc(), models.Order.id.desc()).all()


def list_offers_for_rider(
    db: Session, rider_id: int, now: Optional[datetime] = None
) -> List[Tuple[models.OrderOffer, models.Order]]:
    """Offers the rider can still act on"""
    now = _now(now)
    rows = (
        db.query(models.OrderOffer, models.Order)
        .join(models.Order, models.Order.id == models.OrderOffer.order_id)
        .filter(
            models.OrderOffer.rider_id == rider_id,
            models.OrderOffer.status == models.OfferStatus.OFFERED,
            models.Order.status == models.OrderStatus.ASSIGNED,
        )
        .order_by(models.OrderOffer.created_at.desc())
        .all()
    )
    return [
        (offer, order) for offer, order in rows
        if order.offer_expires_at is None or now <= order.offer_expires_at
    ]
