class PaymentGatewayError(Exception):
    """Base class for payment gateway failures."""


class InvalidKeyFormat(PaymentGatewayError):
    """The watch-only key failed structural validation."""


class InvalidAddressFormat(PaymentGatewayError):
    """A payment address is malformed or carries a bad checksum."""


class DerivationFailure(PaymentGatewayError):
    """Address derivation failed for a specific index. Not retryable for that index."""


class RateUnavailable(PaymentGatewayError):
    """Every configured price source failed."""


class ApiError(PaymentGatewayError):
    """The blockchain API could not be reached or answered with an error."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class AllocationRace(PaymentGatewayError):
    """The index counter kept changing underneath the allocator."""


class OrderNotFound(PaymentGatewayError):
    pass


class InvalidTransition(PaymentGatewayError):
    """The requested transition is not allowed from the record's current status."""


class IndexMismatch(PaymentGatewayError):
    """A posted address was derived at a different index than the one reserved for the order."""
