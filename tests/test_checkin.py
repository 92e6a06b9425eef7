import pytest

from eventdesk.checkin import CheckInService
from eventdesk.errors import ExpiredToken, InvalidState, InvalidToken, NotFoundError
from eventdesk.models import Attendee
from eventdesk.notifications import Outbox
from eventdesk.qr import QrCodec
from conftest import QR_SECRET


@pytest.fixture
def codec(clock):
    return QrCodec(QR_SECRET, clock=clock)


@pytest.fixture
def service(db, seed, sender, codec, clock):
    return CheckInService(db, Outbox(sender), codec, clock=clock)


def naive(moment):
    return moment.replace(tzinfo=None)


def test_manual_check_in(service, seed, clock, sender):
    result = service.check_in(seed.attendee_id, actor="staff-7")

    assert result.is_duplicate is False
    assert result.attendee.status == "checked_in"
    assert result.attendee.checked_in_by == "staff-7"
    assert naive(result.check_in_time) == naive(clock.now)
    assert result.event.title == "PyCon India"
    assert sender.sent[0][0] == "asha@example.com"
    assert sender.sent[0][1] == "Check-in Confirmation for PyCon India"


def test_duplicate_check_in_keeps_original_time(service, seed, clock, sender):
    first = service.check_in(seed.attendee_id, actor="staff-7")
    first_time = first.check_in_time
    clock.advance(minutes=5)

    second = service.check_in(seed.attendee_id, actor="staff-9")

    assert second.is_duplicate is True
    assert second.check_in_time == first_time
    assert second.attendee.checked_in_by == "staff-7"
    assert len(sender.sent) == 1


def test_cancelled_attendee_can_never_check_in(service, seed, db, sender):
    for _ in range(2):
        with pytest.raises(InvalidState, match="cancelled"):
            service.check_in(seed.cancelled_id)

    attendee = db.get(Attendee, seed.cancelled_id)
    assert attendee.status == "cancelled"
    assert attendee.check_in_time is None
    assert sender.sent == []


def test_unknown_attendee(service):
    with pytest.raises(NotFoundError):
        service.check_in("att-missing")


def test_notification_failure_does_not_fail_check_in(service, seed, sender):
    sender.fail = True

    result = service.check_in(seed.attendee_id)

    assert result.is_duplicate is False
    assert result.attendee.status == "checked_in"


def test_scan_checks_in_attendee(service, codec, seed):
    token = codec.encode(seed.attendee_id, seed.event_id).token

    result = service.scan(token)

    assert result.is_duplicate is False
    assert result.attendee.checked_in_by == "system"


def test_scan_twice_is_duplicate(service, codec, seed):
    token = codec.encode(seed.attendee_id, seed.event_id).token
    service.scan(token)
    assert service.scan(token).is_duplicate is True


def test_expired_scan_does_not_touch_attendee(service, codec, seed, clock, db):
    token = codec.encode(seed.attendee_id, seed.event_id).token
    clock.advance(hours=25)

    with pytest.raises(ExpiredToken):
        service.scan(token)
    assert db.get(Attendee, seed.attendee_id).status == "registered"


def test_invalid_scan(service, db, seed):
    with pytest.raises(InvalidToken):
        service.scan("garbage")
    assert db.get(Attendee, seed.attendee_id).status == "registered"


def test_scan_for_other_event_is_rejected(service, codec, seed, db):
    token = codec.encode(seed.attendee_id, seed.other_event_id).token

    with pytest.raises(InvalidToken):
        service.scan(token)
    assert db.get(Attendee, seed.attendee_id).status == "registered"


def test_scan_for_unknown_event(service, codec, seed):
    token = codec.encode(seed.attendee_id, "evt-missing").token
    with pytest.raises(NotFoundError, match="Event"):
        service.scan(token)


def test_scan_cancelled_attendee(service, codec, seed):
    token = codec.encode(seed.cancelled_id, seed.event_id).token
    with pytest.raises(InvalidState):
        service.scan(token)


def test_lookup(service, seed):
    info = service.lookup(seed.attendee_id)
    assert info["isCheckedIn"] is False
    assert info["canCheckIn"] is True
    assert info["event"]["title"] == "PyCon India"

    service.check_in(seed.attendee_id)
    assert service.lookup(seed.attendee_id)["isCheckedIn"] is True
    assert service.lookup(seed.cancelled_id)["canCheckIn"] is False


def test_ticket_qr_round_trips_through_scan(service, seed):
    ticket = service.ticket_qr(seed.attendee_id)
    assert service.scan(ticket.token).attendee.id == seed.attendee_id


def test_ticket_qr_refused_for_cancelled_attendee(service, seed):
    with pytest.raises(InvalidState):
        service.ticket_qr(seed.cancelled_id)

