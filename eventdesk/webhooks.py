from dataclasses import dataclass
from typing import Optional, Union

from eventdesk.errors import ValidationError


@dataclass(frozen=True)
class PaymentCaptured:
    order_id: str
    payment_id: str
    signature: Optional[str] = None


@dataclass(frozen=True)
class PaymentFailed:
    order_id: str
    payment_id: str
    error_description: Optional[str] = None


@dataclass(frozen=True)
class Unhandled:
    event: str


WebhookEvent = Union[PaymentCaptured, PaymentFailed, Unhandled]


def _payment_entity(body):
    try:
        entity = body["payload"]["payment"]["entity"]
    except (KeyError, TypeError):
        raise ValidationError("Webhook payload has no payment entity")
    if (not isinstance(entity, dict) or not _text(entity.get("id"))
            or not _text(entity.get("order_id"))):
        raise ValidationError("Webhook payment entity is missing id or order_id")
    if entity.get("signature") is not None and not isinstance(entity["signature"], str):
        raise ValidationError("Webhook payment signature must be a string")
    return entity


def _text(value):
    return isinstance(value, str) and value != ""


def parse_webhook_event(body) -> WebhookEvent:
    """Map a webhook body ``{"event": ..., "payload": ...}`` to a known event kind.

    Unknown kinds become ``Unhandled``; known kinds with a malformed entity raise
    ``ValidationError``.
    """
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")
    kind = body.get("event")

    if kind == "payment.captured":
        entity = _payment_entity(body)
        return PaymentCaptured(entity["order_id"], entity["id"], entity.get("signature"))
    if kind == "payment.failed":
        entity = _payment_entity(body)
        return PaymentFailed(entity["order_id"], entity["id"], entity.get("error_description"))
    return Unhandled(str(kind))
