# Overview: Error taxonomy shared by services and routes.

"""
Storefront error kinds

Every failure a service can raise is a StorefrontError. The class carries
enough metadata for a route to answer without knowing the subclass:

- kind: validation | not_found | forbidden | conflict | external | consistency
- retryable: the caller may repeat the same request unchanged
- http_status: status code the HTTP layer answers with
- details: structured context for clients and logs

Consistency errors (StockUnderflow, ReconciliationError) are escalated to the
operator alert feed; they are never the reason a legitimately paid order is
rolled back.
"""

from __future__ import annotations


KIND_VALIDATION = "validation"
KIND_NOT_FOUND = "not_found"
KIND_FORBIDDEN = "forbidden"
KIND_CONFLICT = "conflict"
KIND_EXTERNAL = "external"
KIND_CONSISTENCY = "consistency"


class StorefrontError(Exception):
    kind = KIND_VALIDATION
    retryable = False
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": type(self).__name__}
        if self.details:
            body["details"] = self.details
        if self.retryable:
            body["retryable"] = True
        return body


# =============================================================================
# INPUT VALIDATION (permanent, rejected before any mutation)
# =============================================================================

class ValidationError(StorefrontError):
    """400-level input problem."""


class ProductUnavailable(StorefrontError):
    """Product does not exist or is deactivated."""


class InsufficientStock(StorefrontError):
    """Requested quantity exceeds the stock currently on hand."""


class AmountMismatch(StorefrontError):
    """Client-declared amount disagrees with the server-computed total."""


# =============================================================================
# LOOKUPS / ACCESS
# =============================================================================

class NotFoundError(StorefrontError):
    kind = KIND_NOT_FOUND
    http_status = 404


class AccessDenied(StorefrontError):
    kind = KIND_FORBIDDEN
    http_status = 403


class InvalidStatusTransition(StorefrontError):
    kind = KIND_CONFLICT
    http_status = 409


# =============================================================================
# RETRYABLE / EXTERNAL
# =============================================================================

class OrderNumberCollision(StorefrontError):
    """Generated order number already taken; retried internally."""
    kind = KIND_CONFLICT
    retryable = True
    http_status = 409


class OrderBusy(StorefrontError):
    """Another worker holds this order's lock past the wait budget."""
    kind = KIND_CONFLICT
    retryable = True
    http_status = 409


class GatewayError(StorefrontError):
    kind = KIND_EXTERNAL
    http_status = 502


class GatewayTransportError(GatewayError):
    """Network failure, timeout, 5xx or rate limit talking to the gateway."""
    retryable = True
    http_status = 503


class GatewayProtocolError(GatewayError):
    """Gateway answered with something we cannot interpret."""


class GatewayRequestRejected(GatewayError):
    """Gateway refused the request itself (card error, invalid request)."""
    http_status = 400


class SignatureInvalid(StorefrontError):
    """Webhook payload signature did not verify."""
    kind = KIND_EXTERNAL
    http_status = 400


# =============================================================================
# CONSISTENCY (escalate, do not reject a successful payment)
# =============================================================================

class ReconciliationError(StorefrontError):
    kind = KIND_CONSISTENCY
    http_status = 409


class StockUnderflow(StorefrontError):
    """Conditional decrement refused: stock would go negative."""
    kind = KIND_CONSISTENCY
    http_status = 409
