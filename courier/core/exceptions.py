"""Error taxonomy for the dispatch engine.

Every error carries the HTTP status the API renders it with, so routers can
let them propagate to the single handler registered in ``courier.main``.
"""

from typing import Any, Dict, Optional


class DispatchError(Exception):
    """Base exception for all dispatch errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(DispatchError):
    """Missing or invalid input, rejected before any state change."""

    status_code = 400


class NotFoundError(DispatchError):
    """Unknown order, offer or rider."""

    status_code = 404


class ConflictError(DispatchError):
    """The order is no longer in the expected state.

    Callers treat this as "already resolved, re-fetch" rather than a failure.
    """

    status_code = 409


class NoRidersAvailable(DispatchError):
    """No eligible rider is left for an order.

    Never rendered to HTTP callers: it drives the order into ``cancelled``.
    """


class InternalError(DispatchError):
    """Persistence failed; the operation may be retried."""

    status_code = 503
