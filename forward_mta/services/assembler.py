"""
Outer message assembly.

The outer message is multipart/mixed with:

  1. text/plain        the diagnostic report
  2. message/rfc822    optional inline re-rendering of the original, so mail
                       clients show it without opening an attachment
  3. application/octet-stream
                       the original stdin bytes as stdin.eml, base64 encoded,
                       always present and byte-identical to the input

Inline re-rendering is the tricky bit. A message/rfc822 part may only be
declared 7bit, 8bit or binary (RFC 2046 5.2.1); base64 or quoted-printable
on the wrapper breaks Gmail and Apple Mail (Gmail shows a broken attachment,
Apple Mail only shows From/To/Subject). So the inner message is rebuilt
with a base64 body, which is 8bit-safe, and the wrapper is declared 8bit.
When any step fails the part is left out and the operator still has the
attachment.

Public API:
  derive_summary(parsed)                       -> str
  build_subject(sender, hostname, summary)     -> str
  render_header(pair)                          -> bytes
  render_inline(parsed)                        -> bytes | None
  inline_part(parsed)                          -> MIMEBase | None
  build_message(...)                           -> MIMEMultipart
"""

import base64
import email
import logging
import re
from email.mime.application import MIMEApplication
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.policy import compat32
from email.utils import formatdate, make_msgid
from typing import Optional

from forward_mta.services.classifier import HeaderPair, ParsedMessage, RawInput

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

UNPARSEABLE_SUMMARY = "(unparseable message)"
AMBIGUOUS_SUBJECT_SUMMARY = "(multiple Subject headers)"

ATTACHMENT_FILENAME = "stdin.eml"

# RFC 5322 field name: printable US-ASCII except colon.
_HEADER_NAME_RE = re.compile(r"[\x21-\x39\x3b-\x7e]+")

# Line breaks here would end the outer Subject header early.
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")

# Replaced in the inline rendering because the body is re-encoded.
_REENCODED_HEADERS = {"content-type", "content-transfer-encoding"}


# ---------------------------------------------------------------------------
# Subject
# ---------------------------------------------------------------------------

def derive_summary(parsed: Optional[ParsedMessage]) -> str:
    """The original Subject if there is exactly one, otherwise a marker."""
    if parsed is None:
        return UNPARSEABLE_SUMMARY
    subjects = parsed.get_all_values("Subject")
    if len(subjects) == 1:
        return subjects[0]
    return AMBIGUOUS_SUBJECT_SUMMARY


def build_subject(sender: str, hostname: str, summary: str) -> str:
    """Join the parts into one header line; control characters become spaces."""
    return _CONTROL_RE.sub(" ", f"{sender}@{hostname}: {summary}")


# ---------------------------------------------------------------------------
# Inline re-rendering
# ---------------------------------------------------------------------------

def render_header(pair: HeaderPair) -> bytes:
    """Serialize a header as ``Name: value``, restoring the original value bytes."""
    value = pair.value.replace("\r\n", "\n")
    return pair.name.encode("ascii") + b": " + value.encode("utf-8", "surrogateescape")


def _header_is_renderable(pair: HeaderPair) -> bool:
    if not _HEADER_NAME_RE.fullmatch(pair.name):
        logger.debug("header name %r is not printable ASCII", pair.name)
        return False
    try:
        pair.value.encode("utf-8", "surrogateescape").decode("utf-8")
    except UnicodeError:
        logger.debug("value of header %r is not UTF-8", pair.name)
        return False
    return True


def render_inline(parsed: Optional[ParsedMessage]) -> Optional[bytes]:
    """
    Rebuild the original as a message with a base64 text/plain body.

    Returns None, after logging why, when the original is unparseable, not
    text/plain, has a header that cannot be carried over, or has a body that
    cannot be decoded. Headers are all-or-nothing: a partial header set could
    make a client render the message misleadingly.
    """
    if parsed is None:
        logger.debug("inline: message is unparseable")
        return None
    if parsed.mimetype != "text/plain":
        logger.debug("inline: content type is %s, not text/plain", parsed.mimetype)
        return None
    if not parsed.headers_complete:
        logger.debug("inline: header block is incomplete")
        return None
    if not all(_header_is_renderable(h) for h in parsed.headers):
        return None

    try:
        text = parsed.get_body()
    except Exception:
        logger.debug("inline: cannot decode body", exc_info=True)
        return None

    try:
        lines = [
            render_header(h) for h in parsed.headers
            if h.name.lower() not in _REENCODED_HEADERS
        ]
        lines.append(b'Content-Type: text/plain; charset="utf-8"')
        lines.append(b"Content-Transfer-Encoding: base64")
        body = base64.encodebytes(text.encode("utf-8"))
    except Exception:
        logger.debug("inline: re-encoding failed", exc_info=True)
        return None

    return b"\n".join(lines) + b"\n\n" + body


def _inline_part(rendered: bytes) -> MIMEBase:
    part = MIMEBase("message", "rfc822")
    part["Content-Disposition"] = "inline"
    # Safe: the inner body is base64, so only the headers can carry 8bit data.
    part["Content-Transfer-Encoding"] = "8bit"
    # Raw header bytes survive as surrogate escapes and are written back verbatim.
    part.set_payload([email.message_from_bytes(rendered, policy=compat32)])
    return part


def inline_part(parsed: Optional[ParsedMessage]) -> Optional[MIMEBase]:
    """
    The message/rfc822 part for ``parsed``, or None when there is none.

    The part is flattened once here so that anything the generator rejects
    drops the part and not the whole message.
    """
    rendered = render_inline(parsed)
    if rendered is None:
        return None
    try:
        part = _inline_part(rendered)
        part.as_bytes()
    except Exception:
        logger.debug("inline: part cannot be serialized", exc_info=True)
        return None
    return part


# ---------------------------------------------------------------------------
# Outer message
# ---------------------------------------------------------------------------

def _attachment_part(raw: RawInput) -> MIMEApplication:
    # stdin is not necessarily a valid email, so octet-stream rather than message/rfc822
    part = MIMEApplication(raw.payload(), "octet-stream")
    part.add_header("Content-Disposition", "attachment", filename=ATTACHMENT_FILENAME)
    return part


def build_message(
    *,
    sender_email: str,
    recipient_email: str,
    subject: str,
    report: str,
    parsed: Optional[ParsedMessage],
    raw: RawInput,
) -> MIMEMultipart:
    """
    Assemble the outer multipart/mixed message.

    Failures building the report part or the attachment propagate; they
    only happen on resource exhaustion. The inline part never raises.
    """
    message = MIMEMultipart("mixed")
    message["From"] = sender_email
    message["To"] = recipient_email
    message["Subject"] = subject
    message["Date"] = formatdate(localtime=True)
    message["Message-ID"] = make_msgid(domain=sender_email.rpartition("@")[2])

    message.attach(MIMEText(report, "plain", "utf-8"))

    inline = inline_part(parsed)
    if inline is not None:
        message.attach(inline)
    else:
        logger.debug("attaching original without inline rendering, see previous messages")

    message.attach(_attachment_part(raw))
    return message
