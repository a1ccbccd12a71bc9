# Overview: Payment gateway adapter around Stripe PaymentIntents.

"""
Payment Gateway Adapter

WHY: Keep every Stripe detail in one place. The rest of the order core only
sees PaymentHandle, GatewayResult and the normalized status vocabulary:

    succeeded | processing | requires_action | failed

DESIGN:
- Explicitly constructed by the app factory. Each instance owns a
  StripeClient with its own outbound timeout, distinct from any inbound
  request timeout. Module-level stripe settings are never touched.
- No internal retries (max_network_retries=0). Transport failures surface as
  GatewayTransportError and the caller's policy decides.
- Responses missing an id or status raise GatewayProtocolError.
- A gateway status we do not recognise is reported as status=None; the
  reconciliation engine refuses to guess on it.
- Network calls live in _call_create / _call_retrieve so tests can replace
  exactly those and nothing else.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

import stripe

from ..errors import (
    GatewayProtocolError,
    GatewayRequestRejected,
    GatewayTransportError,
    SignatureInvalid,
)


# =============================================================================
# NORMALIZED STATUS VOCABULARY
# =============================================================================

STATUS_SUCCEEDED = "succeeded"
STATUS_PROCESSING = "processing"
STATUS_REQUIRES_ACTION = "requires_action"
STATUS_FAILED = "failed"


_STRIPE_STATUS_MAP = {
    "succeeded": STATUS_SUCCEEDED,
    "processing": STATUS_PROCESSING,
    "requires_action": STATUS_REQUIRES_ACTION,
    "requires_confirmation": STATUS_REQUIRES_ACTION,
    "requires_capture": STATUS_REQUIRES_ACTION,
    "requires_payment_method": STATUS_FAILED,
    "canceled": STATUS_FAILED,
}


def normalize_status(gateway_status: str | None) -> str | None:
    if not gateway_status:
        return None
    return _STRIPE_STATUS_MAP.get(str(gateway_status).lower())


@dataclass(frozen=True)
class PaymentHandle:
    intent_id: str
    client_secret: str
    status: str | None


@dataclass(frozen=True)
class GatewayResult:
    intent_id: str
    status: str | None
    gateway_status: str | None = None
    metadata: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)

    @property
    def order_id(self) -> int | None:
        """The order id tagged in metadata at creation, if it parses."""
        raw = self.metadata.get("order_id")
        if raw is None or str(raw).strip() == "":
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    @classmethod
    def from_payload(cls, payload: dict) -> "GatewayResult":
        """Build a result from a PaymentIntent-shaped dict (API or webhook)."""
        if not isinstance(payload, dict):
            raise GatewayProtocolError("Gateway payload is not an object")
        intent_id = payload.get("id")
        gateway_status = payload.get("status")
        if not intent_id or not isinstance(intent_id, str):
            raise GatewayProtocolError("Gateway payload has no payment intent id")
        if not gateway_status or not isinstance(gateway_status, str):
            raise GatewayProtocolError(
                f"Gateway payload for {intent_id} has no status",
                details={"intent_id": intent_id},
            )
        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, dict):
            metadata = {}
        return cls(
            intent_id=intent_id,
            status=normalize_status(gateway_status),
            gateway_status=gateway_status,
            metadata={str(k): str(v) for k, v in metadata.items()},
            raw=payload,
        )

    def with_status(self, status: str) -> "GatewayResult":
        return GatewayResult(
            intent_id=self.intent_id,
            status=status,
            gateway_status=self.gateway_status,
            metadata=self.metadata,
            raw=self.raw,
        )


def _to_plain(obj) -> dict:
    """Turn a StripeObject into plain JSON-safe dicts for snapshots."""
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    try:
        return json.loads(str(obj))
    except (TypeError, ValueError) as exc:
        raise GatewayProtocolError("Gateway returned an unreadable object") from exc


class StripeGateway:
    """
    Stripe PaymentIntent adapter.

    Args:
        api_key: Stripe secret key
        webhook_secret: endpoint signing secret (whsec_...)
        timeout: outbound request timeout in seconds
        webhook_tolerance: accepted signature age in seconds
    """

    payment_method = "stripe"

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        *,
        timeout: float = 10.0,
        webhook_tolerance: int = 300,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.webhook_tolerance = webhook_tolerance
        self._client = stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=0,
        )

    @classmethod
    def from_config(cls, config) -> "StripeGateway":
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY", ""),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET", ""),
            timeout=float(config.get("GATEWAY_TIMEOUT_SECONDS", 10.0)),
            webhook_tolerance=int(config.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300)),
        )

    # -------------------------------------------------------------------------
    # Public contract
    # -------------------------------------------------------------------------

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict,
        *,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentHandle:
        params = {
            "amount": int(amount_cents),
            "currency": currency.lower(),
            "metadata": {str(k): str(v) for k, v in metadata.items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if description:
            params["description"] = description

        payload = self._call_create(params, idempotency_key)
        if not isinstance(payload, dict) or not payload.get("id"):
            raise GatewayProtocolError("Gateway did not return a payment intent id")
        client_secret = payload.get("client_secret")
        if not client_secret:
            raise GatewayProtocolError(
                f"Gateway returned no client secret for {payload['id']}",
                details={"intent_id": payload["id"]},
            )
        return PaymentHandle(
            intent_id=payload["id"],
            client_secret=client_secret,
            status=normalize_status(payload.get("status")),
        )

    def retrieve_intent(self, intent_id: str) -> GatewayResult:
        payload = self._call_retrieve(intent_id)
        result = GatewayResult.from_payload(payload)
        if result.intent_id != intent_id:
            raise GatewayProtocolError(
                f"Gateway answered for {result.intent_id} when asked for {intent_id}",
                details={"intent_id": intent_id},
            )
        return result

    def verify_event(self, payload: bytes, signature: str | None) -> dict:
        """
        Verify the Stripe-Signature header and decode the event.

        Raises:
            SignatureInvalid: header missing, stale, or not signed by our secret
        """
        if not signature:
            raise SignatureInvalid("Missing webhook signature")
        if not self.webhook_secret:
            raise SignatureInvalid("Webhook secret is not configured")

        if isinstance(payload, bytes):
            text = payload.decode("utf-8", errors="replace")
        else:
            text = payload

        try:
            stripe.WebhookSignature.verify_header(
                text, signature, self.webhook_secret, self.webhook_tolerance
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureInvalid(f"Webhook signature verification failed: {exc}") from exc

        try:
            event = json.loads(text)
        except ValueError as exc:
            raise SignatureInvalid("Webhook payload is not valid JSON") from exc
        if not isinstance(event, dict):
            raise SignatureInvalid("Webhook payload is not an event object")
        return event

    # -------------------------------------------------------------------------
    # Network calls
    # -------------------------------------------------------------------------

    def _call_create(self, params: dict, idempotency_key: str | None) -> dict:
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            intent = self._client.v1.payment_intents.create(params=params, options=options)
        except stripe.StripeError as exc:
            raise self._translate(exc) from exc
        return _to_plain(intent)

    def _call_retrieve(self, intent_id: str) -> dict:
        try:
            intent = self._client.v1.payment_intents.retrieve(intent_id)
        except stripe.StripeError as exc:
            raise self._translate(exc) from exc
        return _to_plain(intent)

    @staticmethod
    def _translate(exc: "stripe.StripeError"):
        message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__
        details = {"gateway_error": type(exc).__name__}
        code = getattr(exc, "code", None)
        if code:
            details["gateway_code"] = code

        if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
            return GatewayTransportError(f"Payment gateway unreachable: {message}", details=details)
        if isinstance(exc, (stripe.CardError, stripe.InvalidRequestError)):
            return GatewayRequestRejected(message, details=details)

        status = getattr(exc, "http_status", None)
        if status is None or status >= 500:
            return GatewayTransportError(f"Payment gateway error: {message}", details=details)
        return GatewayRequestRejected(message, details=details)
