# pixelgrid/gateway.py
"""
Boundary with the payment gateway. Raw gateway objects are decoded once here
into `Succeeded` / `Failed`; nothing past this module sees a gateway payload.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import stripe

from pixelgrid.errors import InvalidGatewayEvent

logger = logging.getLogger("pixelgrid_backend")

SUCCEEDED_TYPES = {"payment_intent.succeeded"}
FAILED_TYPES = {"payment_intent.payment_failed", "payment_intent.canceled"}


@dataclass(frozen=True)
class Succeeded:
    ref: str
    amount: int
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Failed:
    ref: str
    reason: str
    metadata: dict = field(default_factory=dict)
    # canceled intents never succeed later; payment_failed ones may be retried
    permanent: bool = False


GatewayEvent = Succeeded | Failed


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str


class PaymentGateway(Protocol):
    def create_intent(self, amount: int, metadata: dict[str, str]) -> PaymentIntent: ...

    def parse_event(self, payload: bytes, signature: str | None) -> GatewayEvent | None: ...


def decode_intent_event(event: Mapping[str, Any]) -> GatewayEvent | None:
    """
    Decode a gateway event dict. Returns None for event types that are not
    terminal payment outcomes.
    """
    event_type = event.get("type")
    if event_type not in SUCCEEDED_TYPES and event_type not in FAILED_TYPES:
        return None

    try:
        obj = event["data"]["object"]
        ref = str(obj["id"])
    except (KeyError, TypeError) as exc:
        raise InvalidGatewayEvent(f"Event {event.get('id')} has no payment intent object") from exc

    metadata = {str(k): str(v) for k, v in dict(obj.get("metadata") or {}).items()}

    if event_type in SUCCEEDED_TYPES:
        amount = obj.get("amount_received")
        if amount is None:
            amount = obj.get("amount")
        if amount is None:
            raise InvalidGatewayEvent(f"Payment intent {ref} has no amount")
        try:
            amount = int(amount)
        except (TypeError, ValueError) as exc:
            raise InvalidGatewayEvent(f"Payment intent {ref} has a non-numeric amount {amount!r}") from exc
        return Succeeded(ref=ref, amount=amount, metadata=metadata)

    error = obj.get("last_payment_error") or {}
    reason = error.get("message") or obj.get("cancellation_reason") or obj.get("status") or event_type
    return Failed(
        ref=ref,
        reason=str(reason),
        metadata=metadata,
        permanent=event_type == "payment_intent.canceled",
    )


class StripeGateway:
    def __init__(self, api_key: str, webhook_secret: str, currency: str = "usd") -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def create_intent(self, amount: int, metadata: dict[str, str]) -> PaymentIntent:
        if not self.api_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not configured")
        intent = stripe.PaymentIntent.create(
            amount=amount,
            currency=self.currency,
            metadata=metadata,
            api_key=self.api_key,
        )
        logger.info("Created payment intent %s for %d", intent["id"], amount)
        return PaymentIntent(id=intent["id"], client_secret=intent["client_secret"])

    def parse_event(self, payload: bytes, signature: str | None) -> GatewayEvent | None:
        """
        Verify the webhook signature and decode the event.
        Raises stripe.SignatureVerificationError on a bad signature.
        """
        if not self.webhook_secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured")
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(body, signature or "", self.webhook_secret)
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise InvalidGatewayEvent("Webhook body is not JSON") from exc
        return decode_intent_event(event)
