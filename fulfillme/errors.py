"""
Error taxonomy for the marketplace. Each error carries the HTTP status the
API layer responds with; the app turns them into ``{"error": message}`` bodies.
"""

from __future__ import annotations


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    status_code = 400


class InvalidPaymentCode(ValidationError):
    pass


class AuthError(MarketplaceError):
    status_code = 401


class InvalidToken(AuthError):
    status_code = 403


class Forbidden(MarketplaceError):
    status_code = 403


class NotFound(MarketplaceError):
    status_code = 404


class Conflict(MarketplaceError):
    status_code = 400


class AlreadyUnlocked(Conflict):
    pass


class InsufficientResource(MarketplaceError):
    status_code = 400


class InsufficientCredits(InsufficientResource):
    pass


class InternalError(MarketplaceError):
    status_code = 500
