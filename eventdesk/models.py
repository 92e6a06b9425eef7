import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import validates

from eventdesk.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class PaymentStatus(str, enum.Enum):
    CREATED = "created"
    PAYMENT_LINK_CREATED = "payment_link_created"
    PAYMENT_LINK_SENT = "payment_link_sent"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class AttendeeStatus(str, enum.Enum):
    REGISTERED = "registered"
    CHECKED_IN = "checked_in"
    CANCELLED = "cancelled"


class Event(Base):
    __tablename__ = "events"

    id = Column(String, primary_key=True, default=new_id)
    organizer_id = Column(String, index=True)
    title = Column(String, nullable=False)
    start_date = Column(DateTime(timezone=True))
    location = Column(String)

    def summary(self):
        return {
            "id": self.id,
            "title": self.title,
            "start_date": _iso(self.start_date),
            "location": self.location,
        }


class TicketType(Base):
    __tablename__ = "ticket_types"

    id = Column(String, primary_key=True, default=new_id)
    event_id = Column(String, ForeignKey("events.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, default="INR")


class Attendee(Base):
    __tablename__ = "attendees"

    id = Column(String, primary_key=True, default=new_id)
    event_id = Column(String, ForeignKey("events.id"), nullable=False, index=True)
    name = Column(String)
    email = Column(String)
    phone = Column(String)
    ticket_type = Column(String)
    status = Column(String, nullable=False, default=AttendeeStatus.REGISTERED.value)
    registration_date = Column(DateTime(timezone=True), default=utcnow)
    check_in_time = Column(DateTime(timezone=True))   # set once, on first check-in
    checked_in_by = Column(String)                    # user id, "system" or "manual"

    def to_dict(self):
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "ticket_type": self.ticket_type,
            "status": self.status,
            "registration_date": _iso(self.registration_date),
            "check_in_time": _iso(self.check_in_time),
            "checked_in_by": self.checked_in_by,
        }


class Payment(Base):
    __tablename__ = "payments"

    WRITE_ONCE = ("order_id", "event_id", "attendee_id", "ticket_type_id", "amount", "currency")

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, unique=True, index=True, nullable=False)   # local correlation key
    gateway_order_id = Column(String)
    gateway_payment_id = Column(String, index=True)                      # set on capture
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    attendee_id = Column(String, ForeignKey("attendees.id"), nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.CREATED.value)
    payment_method = Column(String)
    payment_details = Column(JSON)
    payment_link_id = Column(String)
    payment_link_url = Column(String)
    error_message = Column(String)
    refund_id = Column(String)
    refund_amount = Column(Numeric(12, 2))
    refund_details = Column(JSON)
    created_by = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @validates(*WRITE_ONCE)
    def _write_once(self, key, value):
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValueError(f"{key} cannot be changed once set")
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "gateway_order_id": self.gateway_order_id,
            "gateway_payment_id": self.gateway_payment_id,
            "event_id": self.event_id,
            "attendee_id": self.attendee_id,
            "ticket_type_id": self.ticket_type_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_link_id": self.payment_link_id,
            "payment_link_url": self.payment_link_url,
            "error_message": self.error_message,
            "refund_id": self.refund_id,
            "refund_amount": str(self.refund_amount) if self.refund_amount is not None else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
