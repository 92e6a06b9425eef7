"""Payment gateway adapter.

``PaymentGateway`` holds the protocol logic that needs no network: amount
conversion and HMAC signature checks. ``StripeGateway`` performs the remote
calls through an explicitly constructed Stripe client so the reconciliation
layer can run against a fake gateway in tests.
"""
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

import stripe
import structlog

from eventdesk.errors import GatewayError

logger = structlog.get_logger(__name__)


@dataclass
class GatewayOrder:
    id: str
    amount: int           # minor units
    currency: str
    receipt: str
    client_secret: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class GatewayPayment:
    id: str
    status: str           # captured | authorized | pending | failed
    order_id: Optional[str] = None
    method: Optional[str] = None
    amount: Optional[int] = None
    error_description: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @property
    def is_captured(self):
        return self.status == "captured"


@dataclass
class GatewayRefund:
    id: str
    amount: int
    status: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class GatewayPaymentLink:
    id: str
    short_url: str
    raw: dict = field(default_factory=dict)


def to_minor_units(amount) -> int:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise GatewayError("Amount must be a number", cause=exc)
    if not value.is_finite() or value <= 0:
        raise GatewayError("Amount must be greater than 0")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _same_digest(expected: str, signature: str) -> bool:
    # compare as bytes; str comparison rejects non-ASCII input with TypeError
    return hmac.compare_digest(expected.encode(), signature.encode("utf-8"))


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not secret:
        raise RuntimeError("WEBHOOK_SECRET is not set. Check your .env file.")
    if not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return _same_digest(expected, signature)


class PaymentGateway(ABC):

    def __init__(self, signing_secret: Optional[str]):
        self.signing_secret = signing_secret

    def verify_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        """Check a client-submitted signature over ``order_id|payment_id``.

        Returns False on any mismatch; raises only when no secret is configured.
        """
        if not self.signing_secret:
            raise RuntimeError("PAYMENT_SIGNING_SECRET is not set. Check your .env file.")
        if not signature:
            return False
        expected = compute_signature(self.signing_secret, order_id, payment_id)
        return _same_digest(expected, signature)

    @abstractmethod
    def create_order(self, amount, currency: str, receipt: str, notes: dict) -> GatewayOrder:
        ...

    @abstractmethod
    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        ...

    @abstractmethod
    def refund(self, payment_id: str, amount, reason: str) -> GatewayRefund:
        ...

    @abstractmethod
    def create_payment_link(self, *, amount, currency: str, description: str,
                            customer: dict, notify: dict, notes: dict,
                            callback_url: Optional[str] = None) -> GatewayPaymentLink:
        ...


def _plain(obj) -> dict:
    for name in ("to_dict_recursive", "to_dict"):
        to_dict = getattr(obj, name, None)
        if callable(to_dict):
            return to_dict()
    return dict(obj)


_CHARGE_STATUS = {"succeeded": "captured", "pending": "pending", "failed": "failed"}


class StripeGateway(PaymentGateway):

    def __init__(self, api_key: str, signing_secret: Optional[str], timeout: float = 10,
                 client=None):
        super().__init__(signing_secret)
        self.client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=0,
        )

    def _call(self, action, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            logger.error("gateway_unreachable", action=action, error=str(exc))
            raise GatewayError(f"Payment gateway unavailable during {action}",
                               cause=exc, inconclusive=True)
        except stripe.StripeError as exc:
            logger.error("gateway_rejected", action=action, error=str(exc),
                         error_type=type(exc).__name__)
            raise GatewayError(f"Payment gateway rejected {action}: {exc.user_message or exc}",
                               cause=exc)

    def create_order(self, amount, currency, receipt, notes):
        minor = to_minor_units(amount)
        intent = self._call(
            "create_order",
            self.client.payment_intents.create,
            params={
                "amount": minor,
                "currency": currency.lower(),
                "automatic_payment_methods": {"enabled": True},
                "metadata": {**notes, "receipt": receipt},
            },
            options={"idempotency_key": receipt},
        )
        return GatewayOrder(
            id=intent.id,
            amount=minor,
            currency=currency,
            receipt=receipt,
            client_secret=intent.client_secret,
            raw=_plain(intent),
        )

    def fetch_payment(self, payment_id):
        charge = self._call("fetch_payment", self.client.charges.retrieve, payment_id)
        status = _CHARGE_STATUS.get(charge.status, charge.status)
        if status == "captured" and not charge.captured:
            status = "authorized"
        metadata = getattr(charge, "metadata", None) or {}
        method_details = getattr(charge, "payment_method_details", None)
        return GatewayPayment(
            id=charge.id,
            status=status,
            order_id=metadata.get("order_id"),
            method=getattr(method_details, "type", None),
            amount=charge.amount,
            error_description=charge.failure_message,
            raw=_plain(charge),
        )

    def refund(self, payment_id, amount, reason):
        minor = to_minor_units(amount)
        refund = self._call(
            "refund",
            self.client.refunds.create,
            params={
                "charge": payment_id,
                "amount": minor,
                "metadata": {"reason": reason, "refund_initiated_by": "system"},
            },
            # one refund per payment; racing requests collapse into the same refund
            options={"idempotency_key": f"refund-{payment_id}"},
        )
        return GatewayRefund(id=refund.id, amount=minor, status=refund.status, raw=_plain(refund))

    def create_payment_link(self, *, amount, currency, description, customer, notify, notes,
                            callback_url=None):
        minor = to_minor_units(amount)
        price = self._call(
            "create_payment_link",
            self.client.prices.create,
            params={
                "unit_amount": minor,
                "currency": currency.lower(),
                "product_data": {"name": description},
            },
        )
        metadata = {
            **notes,
            "customer_name": customer.get("name") or "",
            "customer_email": customer.get("email") or "",
            "customer_contact": customer.get("phone") or "",
            "notify_email": str(bool(notify.get("email"))).lower(),
            "notify_sms": str(bool(notify.get("sms"))).lower(),
        }
        params = {
            "line_items": [{"price": price.id, "quantity": 1}],
            "metadata": metadata,
        }
        if callback_url:
            params["after_completion"] = {"type": "redirect", "redirect": {"url": callback_url}}
        link = self._call("create_payment_link", self.client.payment_links.create, params=params)
        return GatewayPaymentLink(id=link.id, short_url=link.url, raw=_plain(link))
