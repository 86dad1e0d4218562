"""Failures raised by the marketplace services.

Each carries the HTTP status it is rendered with; ``main.py`` turns them into
``{"detail": message}`` responses.
"""


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    status_code = 400


class NotFound(MarketplaceError):
    status_code = 404


class InvalidState(MarketplaceError):
    status_code = 400


class PaymentNotCompleted(InvalidState):
    pass


class Forbidden(MarketplaceError):
    status_code = 403


class Conflict(MarketplaceError):
    status_code = 409


class PaymentGatewayError(MarketplaceError):
    status_code = 502
