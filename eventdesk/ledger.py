"""Payment ledger: the only writer of ``Payment.status``.

Every transition is a single conditional UPDATE filtered on the current status,
so a concurrent writer that loses the race matches no row instead of
overwriting a later state.
"""
import uuid
from contextlib import contextmanager
from decimal import Decimal

import structlog
from sqlalchemy.exc import SQLAlchemyError

from eventdesk.errors import InvalidState, NotFoundError, PersistenceError, ValidationError
from eventdesk.models import Payment, PaymentStatus, utcnow

logger = structlog.get_logger(__name__)

S = PaymentStatus

TRANSITIONS = {
    S.CREATED: {S.PAYMENT_LINK_CREATED, S.CAPTURED, S.FAILED},
    S.PAYMENT_LINK_CREATED: {S.PAYMENT_LINK_SENT},
    S.PAYMENT_LINK_SENT: {S.CAPTURED, S.FAILED},
    S.CAPTURED: {S.REFUNDED},
    S.FAILED: set(),
    S.REFUNDED: set(),
}


def can_transition(current, target) -> bool:
    return S(target) in TRANSITIONS[S(current)]


def sources_of(target):
    return [source.value for source, targets in TRANSITIONS.items() if target in targets]


def new_order_id():
    return f"order_{uuid.uuid4().hex}"


class PaymentLedger:

    def __init__(self, db, clock=utcnow):
        self.db = db
        self.clock = clock

    @contextmanager
    def _atomic(self, action):
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("ledger_write_failed", action=action, error=str(exc))
            raise PersistenceError(f"Failed to {action.replace('_', ' ')}", cause=exc)

    def _transition(self, order_id, target, values=None):
        """Move ``order_id`` to ``target`` if its current status allows it.

        Returns True when this call applied the change.
        """
        changes = dict(values or {})
        changes.update(status=target.value, updated_at=self.clock())
        with self._atomic(f"mark_{target.value}"):
            matched = (
                self.db.query(Payment)
                .filter(Payment.order_id == order_id, Payment.status.in_(sources_of(target)))
                .update(changes, synchronize_session=False)
            )
        if matched:
            logger.info("payment_transition", order_id=order_id, status=target.value)
        return matched == 1

    def create(self, *, event_id, attendee_id, ticket_type_id, amount, currency,
               created_by=None, order_id=None) -> Payment:
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0")
        payment = Payment(
            order_id=order_id or new_order_id(),
            event_id=event_id,
            attendee_id=attendee_id,
            ticket_type_id=ticket_type_id,
            amount=amount,
            currency=currency,
            status=S.CREATED.value,
            created_by=created_by,
        )
        with self._atomic("create_payment"):
            self.db.add(payment)
        self.db.refresh(payment)
        logger.info("payment_created", order_id=payment.order_id, amount=str(amount),
                    currency=currency)
        return payment

    def get(self, payment_id) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    def get_by_order(self, order_id) -> Payment:
        payment = self.db.query(Payment).filter_by(order_id=order_id).first()
        if payment is None:
            raise NotFoundError(f"No payment for order {order_id}")
        return payment

    def attach_gateway_order(self, order_id, gateway_order_id):
        with self._atomic("attach_gateway_order"):
            self.db.query(Payment).filter(
                Payment.order_id == order_id, Payment.gateway_order_id.is_(None)
            ).update({"gateway_order_id": gateway_order_id}, synchronize_session=False)

    def mark_link_created(self, order_id, link_id, link_url) -> Payment:
        if not self._transition(order_id, S.PAYMENT_LINK_CREATED,
                                {"payment_link_id": link_id, "payment_link_url": link_url}):
            self._refuse(order_id, "record a payment link")
        return self.get_by_order(order_id)

    def mark_link_sent(self, order_id) -> Payment:
        if not self._transition(order_id, S.PAYMENT_LINK_SENT):
            self._refuse(order_id, "mark the payment link as sent")
        return self.get_by_order(order_id)

    def capture(self, order_id, gateway_payment_id, method=None, details=None):
        """Apply "capture confirmed".

        Returns ``(payment, applied)``. A payment already captured with the same
        gateway payment id is returned with ``applied=False``.
        """
        applied = self._transition(order_id, S.CAPTURED, {
            "gateway_payment_id": gateway_payment_id,
            "payment_method": method,
            "payment_details": details,
            "error_message": None,
        })
        payment = self.get_by_order(order_id)
        if applied:
            return payment, True
        if payment.status == S.CAPTURED.value and payment.gateway_payment_id == gateway_payment_id:
            return payment, False
        raise InvalidState(f"Cannot capture payment from status {payment.status}")

    def reject(self, order_id, message):
        """Apply "capture rejected". Returns ``(payment, applied)``; never raises on a
        payment that has already moved past the failable states."""
        applied = self._transition(order_id, S.FAILED, {"error_message": message})
        payment = self.get_by_order(order_id)
        if not applied:
            logger.warning("payment_reject_skipped", order_id=order_id, status=payment.status)
        return payment, applied

    def refund(self, order_id, refund_id, amount, details=None) -> Payment:
        applied = self._transition(order_id, S.REFUNDED, {
            "refund_id": refund_id,
            "refund_amount": Decimal(str(amount)),
            "refund_details": details,
        })
        if not applied:
            self._refuse(order_id, "refund")
        return self.get_by_order(order_id)

    def _refuse(self, order_id, action):
        payment = self.get_by_order(order_id)
        raise InvalidState(f"Cannot {action} from current status: {payment.status}")
