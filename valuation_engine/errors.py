"""
Error hierarchy for the valuation engine.

Every error carries an HTTP-ish ``status`` so the request layer can map it
without a lookup table, and a ``to_dict()`` payload with enough detail for the
caller to correct the request.
"""


class ValuationError(Exception):
    """Base class for all engine errors."""

    status = 500
    kind = "valuation_error"

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ValuationError):
    """Malformed or out-of-range input."""

    status = 400
    kind = "validation_error"


class InvalidInput(ValidationError):
    """Numerical input a model or risk calculation cannot accept."""

    kind = "invalid_input"


class NotFound(ValuationError):
    """Unknown position or instrument id."""

    status = 404
    kind = "not_found"


class InstrumentNotFound(NotFound):
    kind = "instrument_not_found"


class PositionNotFound(NotFound):
    kind = "position_not_found"


class InstrumentInUse(ValuationError):
    """An instrument cannot be removed while positions still hold it."""

    status = 409
    kind = "instrument_in_use"


class UnsupportedInstrument(ValuationError):
    """The pricing model cannot value this kind of instrument."""

    status = 422
    kind = "unsupported_instrument"


class ComputationError(ValuationError):
    """Numerical failure, e.g. a simulation produced non-finite values."""

    status = 500
    kind = "computation_error"


class UpstreamUnavailable(ValuationError):
    """A price source could not resolve a symbol."""

    status = 503
    kind = "upstream_unavailable"


class Cancelled(ValuationError):
    """The requester went away before an asynchronous valuation completed."""

    status = 499
    kind = "cancelled"


class SubscriptionClosed(ValuationError):
    """The stream subscription was closed (by the client or as a slow consumer)."""

    status = 410
    kind = "subscription_closed"


class ConfigurationError(ValuationError):
    """Bad engine settings (usually from the environment)."""

    status = 500
    kind = "configuration_error"
