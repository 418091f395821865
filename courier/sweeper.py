"""
Progression Driver

Periodically advances every assigned order whose rider window or global
budget has run out. Each order is handled in its own session so one failure
never blocks the rest of the sweep.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import models
from .core.exceptions import DispatchError
from .core.settings import settings
from .db import SessionLocal
from .dispatch_service import expire_if_due

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    progressed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


def due_order_ids(db: Session, now: datetime) -> List[int]:
    """Assigned orders whose offer deadline or 30-minute budget has passed"""
    budget_cutoff = now - timedelta(seconds=settings.ORDER_TIMEOUT_SECONDS)
    rows = (
        db.query(models.Order.id)
        .filter(
            models.Order.status == models.OrderStatus.ASSIGNED,
            or_(
                models.Order.offer_expires_at.is_(None),
                models.Order.offer_expires_at < now,
                models.Order.created_at <= budget_cutoff,
            ),
        )
        .order_by(models.Order.id)
        .all()
    )
    return [row.id for row in rows]


def sweep_due_orders(session_factory=SessionLocal, now: Optional[datetime] = None) -> SweepReport:
    """Run expire_if_due for every due order and report what moved"""
    now = now or datetime.utcnow()
    report = SweepReport()

    with session_factory() as db:
        order_ids = due_order_ids(db, now)

    for order_id in order_ids:
        report.checked += 1
        try:
            with session_factory() as db:
                result = expire_if_due(db, order_id, now)
        except DispatchError as e:
            logger.warning("Sweep could not advance order %s: %s", order_id, e.message)
            report.failed.append(order_id)
            continue
        except Exception:
            logger.exception("Unexpected error advancing order %s", order_id)
            report.failed.append(order_id)
            continue

        if result.progressed:
            report.progressed.append(order_id)
            logger.info("Order %s progressed: %s (%s)", order_id, result.status.value, result.message)

    if report.checked:
        logger.debug(
            "Sweep checked %d orders, progressed %d, failed %d",
            report.checked, len(report.progressed), len(report.failed),
        )
    return report


class OfferSweeper:
    """Background thread running sweep_due_orders on a fixed interval."""

    def __init__(self, session_factory=SessionLocal, interval_seconds: Optional[float] = None):
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.SWEEP_INTERVAL_SECONDS
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="offer-sweeper")
        self._thread.start()
        logger.info("Offer sweeper started (every %.1fs)", self.interval_seconds)

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                sweep_due_orders(self._session_factory)
            except Exception:
                # Listing due orders failed (e.g. database unreachable); try again next tick
                logger.exception("Offer sweep failed")
            self._stop_event.wait(self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Offer sweeper stopped")
