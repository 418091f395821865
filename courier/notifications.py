"""Offer notifications.

The dispatcher only announces who holds the current offer; delivering that to
the rider's device belongs to an external messaging service.
"""

import logging
from datetime import datetime
from typing import List, Optional, Protocol

logger = logging.getLogger(__name__)


class OfferNotifier(Protocol):
    def offer_created(self, order_id: int, rider_id: int, expires_at: datetime) -> None: ...

    def offer_revoked(self, order_id: int, rider_id: int) -> None: ...


class LoggingNotifier:
    """Default notifier: records the offer target in the service log."""

    def offer_created(self, order_id: int, rider_id: int, expires_at: datetime) -> None:
        logger.info("Offer for order %s sent to rider %s (expires %s)", order_id, rider_id, expires_at.isoformat())

    def offer_revoked(self, order_id: int, rider_id: int) -> None:
        logger.info("Offer for order %s revoked from rider %s", order_id, rider_id)


class RecordingNotifier:
    """Keeps every notification in memory; handy for tests and local debugging."""

    def __init__(self):
        self.created: List[tuple] = []
        self.revoked: List[tuple] = []

    def offer_created(self, order_id: int, rider_id: int, expires_at: datetime) -> None:
        self.created.append((order_id, rider_id, expires_at))

    def offer_revoked(self, order_id: int, rider_id: int) -> None:
        self.revoked.append((order_id, rider_id))


_notifier: OfferNotifier = LoggingNotifier()


def get_notifier() -> OfferNotifier:
    return _notifier


def set_notifier(notifier: Optional[OfferNotifier]) -> None:
    """Install a notifier (None restores the logging default)."""
    global _notifier
    _notifier = notifier or LoggingNotifier()
