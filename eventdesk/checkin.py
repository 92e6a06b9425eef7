from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from eventdesk.errors import (
    ExpiredToken,
    InvalidState,
    InvalidToken,
    NotFoundError,
    PersistenceError,
)
from eventdesk.models import Attendee, AttendeeStatus, Event, utcnow
from eventdesk.notifications import check_in_confirmation
from eventdesk.qr import DecodeStatus

logger = structlog.get_logger(__name__)


@dataclass
class CheckInResult:
    attendee: Attendee
    event: Optional[Event]
    is_duplicate: bool

    @property
    def check_in_time(self):
        return self.attendee.check_in_time


class CheckInService:

    def __init__(self, db, outbox, codec=None, clock=utcnow):
        self.db = db
        self.outbox = outbox
        self.codec = codec
        self.clock = clock

    def _attendee(self, attendee_id):
        attendee = self.db.get(Attendee, attendee_id)
        if attendee is None:
            raise NotFoundError("Attendee not found")
        return attendee

    def check_in(self, attendee_id, actor="manual") -> CheckInResult:
        now = self.clock()
        try:
            matched = (
                self.db.query(Attendee)
                .filter(Attendee.id == attendee_id,
                        Attendee.status == AttendeeStatus.REGISTERED.value)
                .update({
                    "status": AttendeeStatus.CHECKED_IN.value,
                    "check_in_time": now,
                    "checked_in_by": actor,
                }, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("check_in_write_failed", attendee_id=attendee_id, error=str(exc))
            raise PersistenceError("Failed to check in attendee", cause=exc)

        attendee = self._attendee(attendee_id)
        event = self.db.get(Event, attendee.event_id)

        if not matched:
            if attendee.status == AttendeeStatus.CHECKED_IN.value:
                logger.info("check_in_duplicate", attendee_id=attendee_id, actor=actor)
                return CheckInResult(attendee, event, is_duplicate=True)
            if attendee.status == AttendeeStatus.CANCELLED.value:
                raise InvalidState("Cannot check in a cancelled attendee")
            raise InvalidState(f"Cannot check in an attendee with status {attendee.status}")

        logger.info("checked_in", attendee_id=attendee_id, event_id=attendee.event_id, actor=actor)
        if event is not None:
            subject, body = check_in_confirmation(attendee.name, event.title, now)
            self.outbox.enqueue(attendee.email, subject, body)
            self.outbox.flush()
        return CheckInResult(attendee, event, is_duplicate=False)

    def scan(self, qr_data, actor="system") -> CheckInResult:
        result = self.codec.decode(qr_data)
        if result.status is DecodeStatus.EXPIRED:
            raise ExpiredToken(result.error)
        if not result.is_valid:
            raise InvalidToken(result.error)

        payload = result.payload
        attendee = self._attendee(payload.attendee_id)
        if self.db.get(Event, payload.event_id) is None:
            raise NotFoundError("Event not found")
        if attendee.event_id != payload.event_id:
            raise InvalidToken("QR code was not issued for this event")
        return self.check_in(attendee.id, actor)

    def lookup(self, attendee_id):
        attendee = self._attendee(attendee_id)
        event = self.db.get(Event, attendee.event_id)
        return {
            "attendee": attendee.to_dict(),
            "event": event.summary() if event else None,
            "isCheckedIn": attendee.status == AttendeeStatus.CHECKED_IN.value,
            "canCheckIn": attendee.status != AttendeeStatus.CANCELLED.value,
        }

    def ticket_qr(self, attendee_id):
        attendee = self._attendee(attendee_id)
        if attendee.status == AttendeeStatus.CANCELLED.value:
            raise InvalidState("Cannot issue a ticket for a cancelled attendee")
        return self.codec.encode(attendee.id, attendee.event_id)
