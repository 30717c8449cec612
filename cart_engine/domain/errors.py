"""Bledy domeny koszyka. Kazdy ma kod HTTP i maszynowy reason."""


class CartError(Exception):
    """Base exception for all cart engine errors."""

    status_code = 500
    default_reason = "INTERNAL_ERROR"

    def __init__(self, message="An internal error occurred", reason=None, payload=None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv["message"] = self.message
        rv["reason"] = self.reason
        rv["status"] = "error"
        return rv


class NotFoundError(CartError):
    status_code = 404
    default_reason = "NOT_FOUND"

    def __init__(self, message="Resource not found", reason=None, payload=None):
        super().__init__(message, reason, payload)


class ForbiddenError(CartError):
    status_code = 403
    default_reason = "FORBIDDEN"

    def __init__(self, message="Brak dostepu do koszyka", reason=None, payload=None):
        super().__init__(message, reason, payload)


class BadRequestError(CartError):
    status_code = 400
    default_reason = "BAD_REQUEST"


class InsufficientInventoryError(CartError):
    """Raised when a reservation cannot cover the requested quantity."""

    status_code = 409
    default_reason = "INSUFFICIENT_INVENTORY"

    def __init__(self, variant_id, requested, max_quantity):
        self.variant_id = variant_id
        self.requested = requested
        self.max_quantity = max(0, int(max_quantity))
        message = (
            f"Niewystarczajacy stan dla wariantu {variant_id}: "
            f"zadano {requested}, dostepne {self.max_quantity}"
        )
        super().__init__(
            message,
            payload={"variant_id": variant_id, "requested": requested, "max_quantity": self.max_quantity},
        )


class RateLimitedError(CartError):
    status_code = 429
    default_reason = "RATE_LIMITED"


class ConflictError(CartError):
    """Optimistic version mismatch. Retried internally before surfacing."""

    status_code = 409
    default_reason = "VERSION_CONFLICT"

    def __init__(self, message="Konflikt wspolbieznosci - koszyk zostal zmodyfikowany przez inna operacje", reason=None, payload=None):
        super().__init__(message, reason, payload)


class ReservationConversionError(CartError):
    """A soft reservation could not be converted (expired or released meanwhile)."""

    status_code = 409
    default_reason = "RESERVATION_NOT_ACTIVE"
