import os
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from eventdesk import config
from eventdesk.auth import current_user_id
from eventdesk.checkin import CheckInService
from eventdesk.database import get_db
from eventdesk.errors import AuthorizationError, NotFoundError
from eventdesk.gateway import StripeGateway
from eventdesk.models import Event
from eventdesk.notifications import Outbox, sender_from_env
from eventdesk.payments import PaymentService
from eventdesk.qr import QrCodec

router = APIRouter(prefix="/payments", tags=["payments"])
scan_router = APIRouter(prefix="/scan", tags=["check-in"])
attendee_router = APIRouter(prefix="/attendees", tags=["check-in"])


@lru_cache
def get_gateway():
    return StripeGateway(
        config.require("STRIPE_SECRET_KEY"),
        os.getenv("PAYMENT_SIGNING_SECRET"),
        timeout=config.gateway_timeout(),
    )


def get_sender():
    return sender_from_env()


def get_codec():
    return QrCodec(os.getenv("QR_SECRET"))


def get_payment_service(db=Depends(get_db), gateway=Depends(get_gateway),
                        sender=Depends(get_sender)):
    return PaymentService(db, gateway, Outbox(sender))


def get_check_in_service(db=Depends(get_db), sender=Depends(get_sender),
                         codec=Depends(get_codec)):
    return CheckInService(db, Outbox(sender), codec)


class CreateOrderRequest(BaseModel):
    eventId: str
    ticketTypeId: str
    attendeeId: str


class PaymentLinkRequest(BaseModel):
    ticketTypeId: str


class VerifyRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


class ScanRequest(BaseModel):
    qrData: str = Field(..., min_length=1)


@router.post("/create-order", status_code=201)
def create_order(
    request: CreateOrderRequest,
    service: PaymentService = Depends(get_payment_service),
    user_id=Depends(current_user_id),
):
    payment, order = service.create_order(
        request.eventId, request.ticketTypeId, request.attendeeId, created_by=user_id
    )
    return {
        "order": {
            "id": order.id,
            "amount": order.amount,
            "currency": order.currency,
            "receipt": order.receipt,
            "client_secret": order.client_secret,
        },
        "order_id": payment.order_id,
        "payment_id": payment.id,
        "key": os.getenv("STRIPE_PUBLISHABLE_KEY"),
    }


@router.post("/verify")
def verify_payment(
    request: VerifyRequest,
    service: PaymentService = Depends(get_payment_service),
    user_id=Depends(current_user_id),
):
    result = service.verify_payment(request.order_id, request.payment_id, request.signature)
    return {
        "status": result.payment.status,
        "payment": result.payment.to_dict(),
        "duplicate": result.duplicate,
    }


@router.post("/events/{event_id}/attendees/{attendee_id}/payment-link", status_code=201)
def create_payment_link(
    event_id: str,
    attendee_id: str,
    request: PaymentLinkRequest,
    service: PaymentService = Depends(get_payment_service),
    user_id=Depends(current_user_id),
):
    payment, link = service.create_payment_link(
        event_id,
        attendee_id,
        request.ticketTypeId,
        callback_url=f"{config.frontend_url()}/payment/callback",
        created_by=user_id,
    )
    return {"payment_link": link.short_url, "payment_id": payment.id}


@router.get("/{payment_id}")
def get_payment(
    payment_id: str,
    service: PaymentService = Depends(get_payment_service),
    user_id=Depends(current_user_id),
):
    payment, gateway_details = service.get_payment(payment_id)
    return {**payment.to_dict(), "gateway_details": gateway_details}


@router.post("/{payment_id}/refund")
def refund_payment(
    payment_id: str,
    request: RefundRequest = None,
    service: PaymentService = Depends(get_payment_service),
    user_id=Depends(current_user_id),
):
    payment = service.ledger.get(payment_id)
    event = service.db.get(Event, payment.event_id)
    if event is None:
        raise NotFoundError("Event not found")
    if event.organizer_id != user_id:
        raise AuthorizationError("Only the event organizer can refund payments")

    request = request or RefundRequest()
    payment, refund = service.refund(payment_id, request.amount, request.reason)
    return {
        "status": payment.status,
        "refund": {"id": refund.id, "amount": str(payment.refund_amount), "status": refund.status},
        "payment": payment.to_dict(),
    }


def _check_in_response(result, message):
    return {
        "attendee": result.attendee.to_dict(),
        "event": result.event.summary() if result.event else None,
        "isDuplicate": result.is_duplicate,
        "checkInTime": result.check_in_time.isoformat() if result.check_in_time else None,
        "message": "Attendee already checked in" if result.is_duplicate else message,
    }


@scan_router.post("")
def scan_qr_code(
    request: ScanRequest,
    service: CheckInService = Depends(get_check_in_service),
    user_id=Depends(current_user_id),
):
    result = service.scan(request.qrData, actor=user_id or "system")
    return _check_in_response(result, "Check-in successful")


@scan_router.get("/attendees/{attendee_id}")
def get_attendee_for_check_in(
    attendee_id: str,
    service: CheckInService = Depends(get_check_in_service),
    user_id=Depends(current_user_id),
):
    return service.lookup(attendee_id)


@attendee_router.post("/{attendee_id}/check-in")
def manual_check_in(
    attendee_id: str,
    service: CheckInService = Depends(get_check_in_service),
    user_id=Depends(current_user_id),
):
    result = service.check_in(attendee_id, actor=user_id or "manual")
    return _check_in_response(result, "Manual check-in successful")


@attendee_router.get("/{attendee_id}/ticket-qr")
def get_ticket_qr(
    attendee_id: str,
    service: CheckInService = Depends(get_check_in_service),
    user_id=Depends(current_user_id),
):
    ticket = service.ticket_qr(attendee_id)
    return {"token": ticket.token, "qrCode": ticket.image, "timestamp": ticket.payload.timestamp}
