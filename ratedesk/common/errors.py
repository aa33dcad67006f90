"""
Error taxonomy for the pricing and deal engine.

Errors are grouped by how a caller should react to them:

- Validation errors: bad input, rejected before any state mutation
- Not-found errors: unknown deal or configuration
- State-conflict errors: operation not allowed in the deal's current status
- Configuration errors: persisted configuration is unusable
- Collaborator-unavailable errors: store, feed or gateway down (retryable)
- Decimal domain errors: invalid arithmetic (e.g. zero divisor)

Each error carries a stable ``code`` so that an API layer can map it to a
status code without inspecting messages.
"""

from typing import Any, Optional


class RateDeskError(Exception):
    """Base class for all RateDesk errors."""

    code = "RATEDESK_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for transport."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class DecimalDomainError(RateDeskError, ArithmeticError):
    """Arithmetic on monetary values left its valid domain."""

    code = "DECIMAL_DOMAIN_ERROR"


# Validation


class RequestValidationError(RateDeskError):
    code = "VALIDATION_ERROR"


class InvalidDealRequest(RequestValidationError):
    code = "INVALID_DEAL_REQUEST"


class InvalidPartner(RequestValidationError):
    code = "INVALID_PARTNER"

    def __init__(self, partner_id: str):
        super().__init__(
            f"Invalid or inactive partner: {partner_id}",
            {"partner_id": partner_id},
        )
        self.partner_id = partner_id


class RateExceedsMaximum(RequestValidationError):
    code = "RATE_EXCEEDS_MAXIMUM"

    def __init__(self, rate, max_rate):
        super().__init__(
            f"Current rate {rate} exceeds maximum rate {max_rate}",
            {"rate": str(rate), "max_rate": str(max_rate)},
        )
        self.rate = rate
        self.max_rate = max_rate


class RateBelowMinimum(RequestValidationError):
    code = "RATE_BELOW_MINIMUM"

    def __init__(self, rate, min_rate):
        super().__init__(
            f"Current rate {rate} below minimum rate {min_rate}",
            {"rate": str(rate), "min_rate": str(min_rate)},
        )
        self.rate = rate
        self.min_rate = min_rate


# Not found


class NotFoundError(RateDeskError):
    code = "NOT_FOUND"


class DealNotFound(NotFoundError):
    code = "DEAL_NOT_FOUND"

    def __init__(self, deal_id: str):
        super().__init__(f"Deal not found: {deal_id}", {"deal_id": deal_id})
        self.deal_id = deal_id


class ConfigNotFound(NotFoundError):
    code = "CONFIG_NOT_FOUND"


# State conflict


class StateConflictError(RateDeskError):
    code = "STATE_CONFLICT"


class InvalidDealState(StateConflictError):
    """Deal is not in one of the statuses the operation requires."""

    code = "INVALID_DEAL_STATE"

    def __init__(self, deal_id: str, current, expected):
        current_value = getattr(current, "value", current)
        expected_values = sorted(getattr(s, "value", s) for s in expected)
        super().__init__(
            f"Cannot operate on deal {deal_id} in status {current_value} "
            f"(expected one of: {', '.join(expected_values)})",
            {
                "deal_id": deal_id,
                "current_status": current_value,
                "expected_statuses": expected_values,
            },
        )
        self.deal_id = deal_id
        self.current = current
        self.expected = expected


# Configuration


class ConfigurationError(RateDeskError):
    code = "CONFIGURATION_ERROR"


class SpreadConfigInactive(ConfigurationError):
    """A persisted spread configuration was found but is expired or disabled."""

    code = "SPREAD_CONFIG_INACTIVE"

    def __init__(self, symbol: str, config_id: str):
        super().__init__(
            f"Spread configuration {config_id} for {symbol} is not active",
            {"symbol": symbol, "config_id": config_id},
        )
        self.symbol = symbol
        self.config_id = config_id


# Collaborator unavailable


class CollaboratorUnavailable(RateDeskError):
    code = "COLLABORATOR_UNAVAILABLE"
    retryable = True


class StoreUnavailable(CollaboratorUnavailable):
    code = "STORE_UNAVAILABLE"


class ConfigUnavailable(CollaboratorUnavailable):
    code = "CONFIG_UNAVAILABLE"


class PricingUnavailable(CollaboratorUnavailable):
    code = "PRICING_UNAVAILABLE"


class GatewayUnavailable(CollaboratorUnavailable):
    code = "GATEWAY_UNAVAILABLE"


class InsufficientOffers(CollaboratorUnavailable):
    code = "INSUFFICIENT_OFFERS"


class NotificationUnavailable(CollaboratorUnavailable):
    code = "NOTIFICATION_UNAVAILABLE"
