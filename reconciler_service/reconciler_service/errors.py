"""Exception hierarchy for the reconciler service."""

from decimal import Decimal
from typing import Optional


class ReconcilerError(Exception):
    """Base class for every error raised by the reconciler."""

    status_code = 500


class AuthenticationError(ReconcilerError):
    """Bearer token is missing or was rejected by the backend."""

    status_code = 401


class OrderValidationError(ReconcilerError):
    """Input was rejected before any network call was made."""

    status_code = 422


class OrderLockedError(ReconcilerError):
    """The order already has a loading slip and can no longer be changed."""

    status_code = 409

    def __init__(self, order_id: str):
        super().__init__(f"Loading slip already generated for order {order_id}")
        self.order_id = order_id


class CreditLimitExceeded(ReconcilerError):
    """The new order total is above the customer's credit ceiling.

    Attributes:
        new_total: Total the order would have after the change
        ceiling: Credit ceiling returned by the credit service
        excess: ``new_total - ceiling``
    """

    status_code = 409

    def __init__(self, new_total: Decimal, ceiling: Decimal):
        self.new_total = new_total
        self.ceiling = ceiling
        self.excess = new_total - ceiling
        super().__init__(
            f"Order amount ({new_total}) exceeds credit limit ({ceiling}) by {self.excess}"
        )


class CreditLimitUnavailable(ReconcilerError):
    """The credit ceiling could not be fetched, so nothing was submitted."""

    status_code = 503


class ApiError(ReconcilerError):
    """The backend answered with an error or could not be reached.

    Attributes:
        status: HTTP status of the failed call, None for transport failures
        endpoint: Path that was called
    """

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, endpoint: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint


class NotFoundError(ApiError):
    """The backend answered 404."""
