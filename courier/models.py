from sqlalchemy import (
    Column, Integer, Float, String, Boolean, DateTime, ForeignKey, JSON, Index, UniqueConstraint,
    Enum as SQLEnum, text,
)
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from .db import Base


def _values(enum_cls):
    # Persist the lowercase values ("offered"), not the member names
    return [member.value for member in enum_cls]


# Enums
class UserRole(str, enum.Enum):
    REQUESTER = "requester"
    RIDER = "rider"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"  # Created, no offer yet
    ASSIGNED = "assigned"  # Exactly one rider holds an open offer
    ACCEPTED = "accepted"  # A rider took the order
    DELIVERED = "delivered"  # Delivery code verified
    CANCELLED = "cancelled"  # No rider found, timed out, or requester cancelled


class OfferStatus(str, enum.Enum):
    OFFERED = "offered"  # Sent to rider, awaiting response
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"  # Deadline passed or a sibling was accepted


# Orders that are visible in a requester's history
HISTORY_STATUSES = (
    OrderStatus.ASSIGNED,
    OrderStatus.ACCEPTED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
)


# Models
class User(Base):
    """Requesters and riders. Rider position is maintained by the location reporter."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    role = Column(SQLEnum(UserRole, values_callable=_values), nullable=False, index=True)
    phone = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)

    # Rider availability
    is_online = Column(Boolean, default=False, index=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)


class Order(Base):
    """A delivery request and its dispatch lifecycle"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # Geo
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    drop_lat = Column(Float, nullable=False)
    drop_lng = Column(Float, nullable=False)

    # Commercial (fixed at creation)
    distance_km = Column(Float, nullable=False)
    total_price = Column(Integer, nullable=False)
    commission = Column(Integer, nullable=False)
    rider_earnings = Column(Integer, nullable=False)
    package_details = Column(JSON, nullable=True)

    # Lifecycle
    status = Column(
        SQLEnum(OrderStatus, values_callable=_values),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True,
    )
    offer_expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    requester = relationship("User", foreign_keys=[user_id])
    driver = relationship("User", foreign_keys=[driver_id])
    offers = relationship("OrderOffer", back_populates="order", order_by="OrderOffer.id")
    otp = relationship("OrderOtp", back_populates="order", uselist=False)


class OrderOffer(Base):
    """One rider's chance at one order"""
    __tablename__ = "order_offers"
    __table_args__ = (
        # A rider is never re-offered the same order
        UniqueConstraint("order_id", "rider_id", name="uq_order_offers_order_rider"),
        # Single active offer per order
        Index(
            "uq_order_offers_active",
            "order_id",
            unique=True,
            sqlite_where=text("status = 'offered'"),
            postgresql_where=text("status = 'offered'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    rider_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(
        SQLEnum(OfferStatus, values_callable=_values),
        default=OfferStatus.OFFERED,
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    order = relationship("Order", back_populates="offers")
    rider = relationship("User")


class OrderOtp(Base):
    """Pickup/delivery confirmation codes, created when an order is accepted"""
    __tablename__ = "order_otps"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    pickup_otp = Column(String(4), nullable=False)
    delivery_otp = Column(String(4), nullable=False)
    pickup_verified = Column(Boolean, default=False)
    delivery_verified = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="otp")


class DriverLocation(Base):
    """Location pings reported by riders; never written by the dispatcher"""
    __tablename__ = "driver_locations"

    id = Column(Integer, primary_key=True, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
