"""
SMTP delivery of the outer message.

Connects to the configured relay on the submission port, upgrades with
STARTTLS, authenticates with AUTH PLAIN over the encrypted channel and
submits the message once. There are no retries.
"""

import logging
import re
import smtplib
import ssl
from email.message import Message

from forward_mta.models.config import MtaConfig

logger = logging.getLogger(__name__)

SUBMISSION_PORT = 587
SMTP_TIMEOUT = 60  # seconds, per socket operation

_BARE_LF_RE = re.compile(rb"(?<!\r)\n")


class DeliveryError(Exception):
    """Raised when the SMTP exchange fails (connect, TLS, auth or submission)."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def wire_bytes(message: Message) -> bytes:
    """Flatten ``message`` with the CRLF line endings SMTP DATA requires."""
    payload = message.as_bytes(policy=message.policy.clone(linesep="\r\n"))
    # Header values holding raw 8bit bytes are written verbatim, folds included.
    return _BARE_LF_RE.sub(b"\r\n", payload)


def send_message(message: Message, config: MtaConfig, timeout: float = SMTP_TIMEOUT) -> None:
    """
    Send ``message`` from config.sender_email to config.recipient_email.

    Raises:
        DeliveryError: wrapping the smtplib or socket error
    """
    payload = wire_bytes(message)
    context = ssl.create_default_context()

    logger.debug("connecting to %s:%d", config.smtp_host, SUBMISSION_PORT)
    try:
        with smtplib.SMTP(config.smtp_host, SUBMISSION_PORT, timeout=timeout) as client:
            client.ehlo()
            client.starttls(context=context)
            client.ehlo()
            client.user, client.password = config.smtp_username, config.smtp_password
            client.auth("PLAIN", client.auth_plain)
            client.sendmail(config.sender_email, [config.recipient_email], payload)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("delivery via %s failed: %r", config.smtp_host, e)
        raise DeliveryError(f"{type(e).__name__}: {e}")

    logger.debug("message accepted by %s", config.smtp_host)
