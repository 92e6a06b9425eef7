"""Payment reconciliation.

Both the client verification call and the gateway webhook end up in
``PaymentService._settle_capture`` so that, whichever arrives first and however
often either is repeated, the payment is captured once.
"""
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import structlog

from eventdesk.errors import (
    GatewayError,
    InvalidSignature,
    InvalidState,
    InvalidWebhookSignature,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from eventdesk.gateway import verify_webhook_signature
from eventdesk.ledger import PaymentLedger
from eventdesk.models import Attendee, Event, Payment, PaymentStatus, TicketType
from eventdesk.notifications import payment_confirmation
from eventdesk.webhooks import PaymentCaptured, PaymentFailed, parse_webhook_event

logger = structlog.get_logger(__name__)


@dataclass
class CaptureResult:
    payment: Payment
    duplicate: bool = False


class PaymentService:

    def __init__(self, db, gateway, outbox, ledger=None):
        self.db = db
        self.gateway = gateway
        self.outbox = outbox
        self.ledger = ledger or PaymentLedger(db)

    # -- order / link creation -------------------------------------------

    def _load_purchase(self, event_id, ticket_type_id, attendee_id):
        event = self.db.get(Event, event_id)
        if event is None:
            raise NotFoundError("Event not found")
        ticket_type = self.db.query(TicketType).filter_by(id=ticket_type_id, event_id=event_id).first()
        if ticket_type is None:
            raise NotFoundError("Ticket type not found")
        attendee = self.db.get(Attendee, attendee_id)
        if attendee is None or attendee.event_id != event_id:
            raise NotFoundError("Attendee not found")
        return event, ticket_type, attendee

    def create_order(self, event_id, ticket_type_id, attendee_id, created_by=None):
        event, ticket_type, attendee = self._load_purchase(event_id, ticket_type_id, attendee_id)
        currency = ticket_type.currency or "INR"
        payment = self.ledger.create(
            event_id=event.id,
            attendee_id=attendee.id,
            ticket_type_id=ticket_type.id,
            amount=ticket_type.price,
            currency=currency,
            created_by=created_by,
        )
        order_id = payment.order_id
        try:
            order = self.gateway.create_order(
                ticket_type.price,
                currency,
                order_id,
                {
                    "order_id": order_id,
                    "event_id": event.id,
                    "ticket_type_id": ticket_type.id,
                    "attendee_id": attendee.id,
                },
            )
        except GatewayError as exc:
            if not exc.inconclusive:
                self.ledger.reject(order_id, exc.message)
            raise
        self.ledger.attach_gateway_order(order_id, order.id)
        return self.ledger.get_by_order(order_id), order

    def create_payment_link(self, event_id, attendee_id, ticket_type_id, callback_url=None,
                            created_by=None):
        event, ticket_type, attendee = self._load_purchase(event_id, ticket_type_id, attendee_id)
        currency = ticket_type.currency or "INR"
        payment = self.ledger.create(
            event_id=event.id,
            attendee_id=attendee.id,
            ticket_type_id=ticket_type.id,
            amount=ticket_type.price,
            currency=currency,
            created_by=created_by,
        )
        try:
            link = self.gateway.create_payment_link(
                amount=ticket_type.price,
                currency=currency,
                description=f"Payment for {event.title} - {ticket_type.name}",
                customer={"name": attendee.name, "email": attendee.email, "phone": attendee.phone},
                notify={"email": True, "sms": bool(attendee.phone)},
                notes={
                    "order_id": payment.order_id,
                    "event_id": event.id,
                    "attendee_id": attendee.id,
                    "type": "event_ticket",
                },
                callback_url=callback_url,
            )
        except GatewayError as exc:
            if not exc.inconclusive:
                self.ledger.reject(payment.order_id, exc.message)
            raise
        self.ledger.mark_link_created(payment.order_id, link.id, link.short_url)
        # the gateway delivers the link to the customer per the notify settings
        payment = self.ledger.mark_link_sent(payment.order_id)
        return payment, link

    # -- capture -----------------------------------------------------------

    def verify_payment(self, order_id, payment_id, signature) -> CaptureResult:
        """Client-side confirmation of a payment."""
        if not self.gateway.verify_signature(order_id, payment_id, signature):
            logger.warning("payment_signature_invalid", order_id=order_id, payment_id=payment_id)
            raise InvalidSignature()
        return self._settle_capture(order_id, payment_id)

    def _settle_capture(self, order_id, payment_id) -> CaptureResult:
        payment = self.ledger.get_by_order(order_id)
        if (payment.status == PaymentStatus.CAPTURED.value
                and payment.gateway_payment_id == payment_id):
            logger.info("payment_capture_duplicate", order_id=order_id, payment_id=payment_id)
            return CaptureResult(payment, duplicate=True)

        try:
            details = self.gateway.fetch_payment(payment_id)
        except GatewayError as exc:
            if exc.inconclusive:
                # outcome unknown: leave the payment for a retry or manual reconciliation
                logger.error("payment_capture_unresolved", order_id=order_id, payment_id=payment_id)
                raise
            self.ledger.reject(order_id, exc.message)
            raise

        if details.order_id and details.order_id != order_id:
            message = f"Payment {payment_id} belongs to order {details.order_id}"
            self.ledger.reject(order_id, message)
            raise InvalidState(message)
        if not details.is_captured:
            message = details.error_description or f"Payment {payment_id} is {details.status}"
            self.ledger.reject(order_id, message)
            raise InvalidState(f"Payment not captured: {message}")

        try:
            payment, applied = self.ledger.capture(order_id, payment_id, details.method, details.raw)
        except PersistenceError as exc:
            try:
                self.ledger.reject(order_id, exc.message)
            except PersistenceError:
                logger.error("payment_reject_failed", order_id=order_id)
            raise

        if applied:
            self._queue_payment_confirmation(payment)
            self.outbox.flush()
        return CaptureResult(payment, duplicate=not applied)

    def _queue_payment_confirmation(self, payment):
        attendee = self.db.get(Attendee, payment.attendee_id)
        event = self.db.get(Event, payment.event_id)
        if attendee is None or event is None:
            return
        subject, body = payment_confirmation(attendee.name, event.title, payment.amount,
                                             payment.currency, payment.order_id)
        self.outbox.enqueue(attendee.email, subject, body)

    # -- webhook -----------------------------------------------------------

    def process_webhook(self, raw_body: bytes, signature, secret) -> str:
        """Handle an authenticated gateway notification.

        Returns the outcome: ``captured``, ``duplicate``, ``failed``, ``ignored``
        or ``rejected``. Only inconclusive gateway errors and storage errors
        propagate, so the sender retries exactly those.
        """
        if not verify_webhook_signature(raw_body, signature, secret):
            logger.warning("webhook_signature_invalid")
            raise InvalidWebhookSignature()
        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Invalid webhook payload", cause=exc)

        try:
            event = parse_webhook_event(body)
            if isinstance(event, PaymentCaptured):
                # the body HMAC already authenticates the entity; a signature
                # carried on it is checked as well, an absent one is not required
                if event.signature and not self.gateway.verify_signature(
                        event.order_id, event.payment_id, event.signature):
                    raise InvalidSignature()
                result = self._settle_capture(event.order_id, event.payment_id)
                outcome = "duplicate" if result.duplicate else "captured"
            elif isinstance(event, PaymentFailed):
                _, applied = self.ledger.reject(
                    event.order_id, event.error_description or "Payment failed")
                outcome = "failed" if applied else "ignored"
            else:
                logger.info("webhook_ignored", kind=event.event)
                outcome = "ignored"
        except GatewayError as exc:
            if exc.inconclusive:
                raise
            outcome = "rejected"
            logger.warning("webhook_rejected", error=exc.message)
        except (InvalidSignature, InvalidState, NotFoundError, ValidationError) as exc:
            outcome = "rejected"
            logger.warning("webhook_rejected", error=exc.message, error_type=type(exc).__name__)

        logger.info("webhook_processed", kind=body.get("event") if isinstance(body, dict) else None,
                    outcome=outcome)
        return outcome

    # -- refund / lookup ---------------------------------------------------

    def refund(self, payment_id, amount=None, reason=None):
        payment = self.ledger.get(payment_id)
        if payment.status != PaymentStatus.CAPTURED.value:
            raise InvalidState(f"Payment cannot be refunded. Current status: {payment.status}")

        if amount is None:
            amount = payment.amount
        try:
            amount = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValidationError("Amount must be a positive number", cause=exc)
        if amount <= 0:
            raise ValidationError("Amount must be a positive number")
        if amount > payment.amount:
            raise ValidationError("Refund amount exceeds the amount paid")

        refund = self.gateway.refund(payment.gateway_payment_id, amount, reason or "Refund")
        payment = self.ledger.refund(payment.order_id, refund.id, amount, refund.raw)
        logger.info("payment_refunded", order_id=payment.order_id, refund_id=refund.id,
                    amount=str(amount))
        return payment, refund

    def get_payment(self, payment_id):
        payment = self.ledger.get(payment_id)
        gateway_details = None
        if payment.gateway_payment_id:
            try:
                gateway_details = self.gateway.fetch_payment(payment.gateway_payment_id).raw
            except GatewayError as exc:
                logger.warning("gateway_details_unavailable", payment_id=payment.id,
                               error=exc.message)
        return payment, gateway_details
