"""
Errors raised by the marketplace operations.

Each error carries the HTTP status code it is rendered with; the handlers in
``main`` turn them into ``{"success": False, "message": ...}`` responses.
"""
from typing import List, Optional


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class ValidationFailed(MarketplaceError):
    status_code = 400


class NotFound(MarketplaceError):
    status_code = 404


class Forbidden(MarketplaceError):
    status_code = 403


class InvalidState(MarketplaceError):
    status_code = 400


class InsufficientInventory(MarketplaceError):
    status_code = 400


class OwnershipMismatch(MarketplaceError):
    """A line item belongs to a farmer other than the one the order targets."""
    status_code = 400


class AlreadyExists(MarketplaceError):
    status_code = 400
