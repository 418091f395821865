"""Pickup/delivery confirmation codes for accepted orders."""

import logging
import secrets
from typing import Tuple

from sqlalchemy.orm import Session

from . import models
from .core.exceptions import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _four_digit_code() -> str:
    return str(1000 + secrets.randbelow(9000))


def generate_otp_pair() -> Tuple[str, str]:
    """Two distinct 4-digit codes"""
    pickup = _four_digit_code()
    delivery = _four_digit_code()
    while delivery == pickup:
        delivery = _four_digit_code()
    return pickup, delivery


def create_order_otp(db: Session, order: models.Order) -> models.OrderOtp:
    """Attach the OTP pair to an order inside the caller's transaction (idempotent)"""
    existing = db.query(models.OrderOtp).filter(models.OrderOtp.order_id == order.id).first()
    if existing:
        return existing

    pickup, delivery = generate_otp_pair()
    otp = models.OrderOtp(order_id=order.id, pickup_otp=pickup, delivery_otp=delivery)
    db.add(otp)
    db.flush()
    logger.info("OTPs generated for order %s", order.id)
    return otp


def get_order_otp(db: Session, order_id: int) -> models.OrderOtp:
    otp = db.query(models.OrderOtp).filter(models.OrderOtp.order_id == order_id).first()
    if not otp:
        raise NotFoundError("OTPs not found for this order", {"order_id": order_id})
    return otp


def _matches(code, expected: str) -> bool:
    if not isinstance(code, str):
        return False
    return secrets.compare_digest(code.encode("utf-8"), expected.encode("utf-8"))


def check_code(otp: models.OrderOtp, stage: str, code: str) -> None:
    """Validate a pickup/delivery code against the stored pair and mark it verified"""
    if stage == "pickup":
        if otp.pickup_verified:
            raise ConflictError("Pickup already verified")
        if not _matches(code, otp.pickup_otp):
            raise ValidationError("Invalid pickup code")
        otp.pickup_verified = True
    elif stage == "delivery":
        if not otp.pickup_verified:
            raise ConflictError("Pickup must be verified before delivery")
        if otp.delivery_verified:
            raise ConflictError("Delivery already verified")
        if not _matches(code, otp.delivery_otp):
            raise ValidationError("Invalid delivery code")
        otp.delivery_verified = True
    else:
        raise ValidationError(f"Unknown verification stage: {stage}")
