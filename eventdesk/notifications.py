import os
import smtplib
from email.message import EmailMessage
from email.utils import formataddr

import structlog

logger = structlog.get_logger(__name__)


class SmtpSender:

    def __init__(self, host, port=587, user=None, password=None, starttls=True,
                 from_name="Event Organizer", from_address=None, timeout=10):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.starttls = starttls
        self.from_name = from_name
        self.from_address = from_address or user
        self.timeout = timeout

    def send(self, to, subject, body):
        message = EmailMessage()
        message["From"] = formataddr((self.from_name, self.from_address))
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.starttls:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password)
            smtp.send_message(message)
        logger.info("email_sent", to=to, subject=subject)


class LogSender:
    """Stands in for SMTP when no mail host is configured."""

    def send(self, to, subject, body):
        logger.info("email_not_sent_no_smtp", to=to, subject=subject)


def sender_from_env():
    host = os.getenv("SMTP_HOST")
    if not host:
        return LogSender()
    return SmtpSender(
        host,
        port=int(os.getenv("SMTP_PORT", "587")),
        user=os.getenv("SMTP_USER"),
        password=os.getenv("SMTP_PASSWORD"),
        starttls=os.getenv("SMTP_STARTTLS", "true").lower() == "true",
        from_name=os.getenv("EMAIL_FROM_NAME", "Event Organizer"),
        from_address=os.getenv("EMAIL_FROM_ADDRESS"),
    )


class Outbox:
    """Messages queued during a request and delivered after the write commits.

    Delivery failures are logged and dropped; they never reach the caller.
    """

    def __init__(self, sender):
        self.sender = sender
        self.pending = []

    def enqueue(self, to, subject, body):
        if not to:
            return
        self.pending.append((to, subject, body))

    def flush(self) -> int:
        delivered = 0
        pending, self.pending = self.pending, []
        for to, subject, body in pending:
            try:
                self.sender.send(to, subject, body)
                delivered += 1
            except Exception as exc:
                logger.warning("notification_failed", to=to, subject=subject, error=str(exc))
        return delivered


def check_in_confirmation(attendee_name, event_name, check_in_time):
    subject = f"Check-in Confirmation for {event_name}"
    body = (
        f"Hi {attendee_name},\n\n"
        f"You have been successfully checked in to {event_name} at {check_in_time:%Y-%m-%d %H:%M} UTC.\n\n"
        "Thank you for attending!\n\n"
        "Best regards,\n"
        "The Event Organizer Team"
    )
    return subject, body


def payment_confirmation(attendee_name, event_name, amount, currency, order_id):
    subject = f"Payment received for {event_name}"
    body = (
        f"Hi {attendee_name},\n\n"
        f"We received your payment of {amount} {currency} for {event_name}.\n"
        f"Order reference: {order_id}\n\n"
        "Best regards,\n"
        "The Event Organizer Team"
    )
    return subject, body
