"""Signed QR ticket payloads.

A payload ``{"type", "attendeeId", "eventId", "timestamp", "code"?}`` is signed
as an HS256 JWT and the resulting token is what the QR image carries.
``timestamp`` is epoch milliseconds.
"""
import base64
import enum
import io
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import qrcode
from PIL import Image
from qrcode.image.pil import PilImage
from jose import JWTError, jwt

from eventdesk.models import utcnow

MAX_AGE = timedelta(hours=24)
CLOCK_SKEW = timedelta(minutes=5)
TOKEN_TYPES = ("ticket", "checkin")


class DecodeStatus(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class QrPayload:
    type: str
    attendee_id: str
    event_id: str
    timestamp: int
    code: Optional[str] = None

    def to_claims(self):
        claims = {
            "type": self.type,
            "attendeeId": self.attendee_id,
            "eventId": self.event_id,
            "timestamp": self.timestamp,
        }
        if self.code:
            claims["code"] = self.code
        return claims


@dataclass(frozen=True)
class DecodeResult:
    status: DecodeStatus
    payload: Optional[QrPayload] = None
    error: Optional[str] = None

    @property
    def is_valid(self):
        return self.status is DecodeStatus.VALID


@dataclass(frozen=True)
class QrTicket:
    token: str
    payload: QrPayload
    image: str   # PNG data URL


def _millis(moment):
    return int(moment.timestamp() * 1000)


def render_png(data, width=300, dark="#1e40af", light="#eff6ff"):
    qr = qrcode.QRCode(border=1, image_factory=PilImage)
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(fill_color=dark, back_color=light).get_image()
    image = image.resize((width, width), Image.NEAREST)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


class QrCodec:

    def __init__(self, secret, max_age=MAX_AGE, clock=utcnow):
        if not secret:
            raise RuntimeError("QR_SECRET is not set. Check your .env file.")
        self.secret = secret
        self.max_age = max_age
        self.clock = clock

    def sign(self, payload: QrPayload) -> str:
        return jwt.encode(payload.to_claims(), self.secret, algorithm="HS256")

    def encode(self, attendee_id, event_id, verification_code=None) -> QrTicket:
        payload = QrPayload(
            type="ticket",
            attendee_id=attendee_id,
            event_id=event_id,
            timestamp=_millis(self.clock()),
            code=verification_code or None,
        )
        token = self.sign(payload)
        return QrTicket(token=token, payload=payload, image=render_png(token))

    def decode(self, raw) -> DecodeResult:
        """Verify and parse scanned QR data.

        Never raises for bad input: the result is tagged ``invalid`` or
        ``expired`` instead.
        """
        if not isinstance(raw, str) or not raw.strip():
            return DecodeResult(DecodeStatus.INVALID, error="QR code data is required")
        try:
            claims = jwt.decode(raw.strip(), self.secret, algorithms=["HS256"])
        except JWTError:
            return DecodeResult(DecodeStatus.INVALID, error="Invalid QR code")

        attendee_id = claims.get("attendeeId")
        event_id = claims.get("eventId")
        timestamp = claims.get("timestamp")
        token_type = claims.get("type", "ticket")
        if (not attendee_id or not event_id or token_type not in TOKEN_TYPES
                or isinstance(timestamp, bool) or not isinstance(timestamp, int)):
            return DecodeResult(DecodeStatus.INVALID, error="Invalid QR code data")

        payload = QrPayload(token_type, str(attendee_id), str(event_id), timestamp,
                            claims.get("code"))
        age = _millis(self.clock()) - timestamp
        if age < -CLOCK_SKEW.total_seconds() * 1000:
            return DecodeResult(DecodeStatus.INVALID, payload, "QR code timestamp is in the future")
        if age > self.max_age.total_seconds() * 1000:
            return DecodeResult(DecodeStatus.EXPIRED, payload, "QR code has expired")
        return DecodeResult(DecodeStatus.VALID, payload)
