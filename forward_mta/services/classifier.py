"""
Input classifier.

Reads the message handed to sendmail on stdin and tries to give it
structure. Nothing in here fails the run: a read error is captured into
RawInput, and input that does not look like a mail message classifies as
None (attachment-only forwarding).

Public API:
  read_stdin(stream=None)  -> RawInput
  classify(raw)            -> ParsedMessage | None
  scan_header_block(data)  -> list[HeaderPair]
"""

import errno
import logging
import re
import sys
from dataclasses import dataclass, field
from email import errors
from email.header import decode_header, make_header
from email.message import Message
from email.parser import BytesParser
from email.policy import compat32
from email.utils import collapse_rfc2231_value
from enum import Enum
from typing import BinaryIO, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class BodyDecodeError(Exception):
    """Raised when a message body cannot be turned into text."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Raw input
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawInput:
    """
    Exactly what was read from stdin, or the error that stopped the read.

    ``data`` is never modified after capture; the attachment part of the
    outer message is built from it verbatim.
    """
    data: bytes = b""
    error: Optional[OSError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def payload(self) -> bytes:
        """Bytes to attach: the original input, or a description of the read failure."""
        if self.error is None:
            return self.data
        text = f"forward-as-attachment-mta failed to read stdin: {self.error!r}"
        return text.encode("utf-8")


def read_stdin(stream: Optional[BinaryIO] = None) -> RawInput:
    """
    Read the binary stdin stream to EOF.

    An empty stream is a valid (empty) message. OSError is captured, not raised.
    """
    if stream is None:
        if sys.stdin is None:
            # fd 0 was closed by the caller
            return RawInput(error=OSError(errno.EBADF, "stdin is not open"))
        stream = sys.stdin.buffer

    try:
        data = stream.read()
    except OSError as e:
        logger.warning("failed to read stdin: %r", e)
        return RawInput(error=e)

    logger.debug("read %d bytes from stdin", len(data))
    return RawInput(data=data)


# ---------------------------------------------------------------------------
# Parsed view
# ---------------------------------------------------------------------------

class BodyEncoding(str, Enum):
    SEVEN_BIT = "7bit"
    EIGHT_BIT = "8bit"
    BINARY = "binary"
    QUOTED_PRINTABLE = "quoted-printable"
    BASE64 = "base64"

    @classmethod
    def from_header(cls, value: object) -> "BodyEncoding":
        """Classify a Content-Transfer-Encoding value; absent or unknown means 7bit."""
        if value is None:
            return cls.SEVEN_BIT
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.SEVEN_BIT


@dataclass(frozen=True)
class HeaderPair:
    """
    One header as it appeared in the input.

    ``value`` keeps folding whitespace, and bytes that were not ASCII are
    carried as surrogate escapes so the original bytes can be recovered.
    """
    name: str
    value: str


# Structural defects that mean the header block was cut short or lost a line.
_INCOMPLETE_HEADER_DEFECTS = (
    errors.MissingHeaderBodySeparatorDefect,
    errors.FirstHeaderLineIsContinuationDefect,
    errors.InvalidHeaderDefect,
    errors.MisplacedEnvelopeHeaderDefect,
)

_FOLD_RE = re.compile(r"\r?\n(?=[ \t])")
_LINE_RE = re.compile(rb"[^\n]*\n|[^\n]+")


def scan_header_block(data: bytes) -> list[HeaderPair]:
    """
    Split the header block of ``data`` into name/value pairs.

    Names are whatever precedes the first colon, so non-ASCII or otherwise
    malformed names are kept for the caller to judge. Scanning stops at the
    blank line, at a line without a colon, or at a continuation line with
    nothing to continue. Values follow the parser's conventions: leading
    blanks stripped, folds kept, no trailing line ending.
    """
    pairs: list[tuple[str, list[str]]] = []
    for index, raw_line in enumerate(_LINE_RE.findall(data)):
        line = raw_line.decode("ascii", "surrogateescape")
        if index == 0 and line.startswith("From "):
            continue
        if not line.rstrip("\r\n"):
            break
        if line[0] in " \t":
            if not pairs:
                break
            pairs[-1][1].append(line)
            continue
        name, sep, value = line.partition(":")
        if not sep or not name:
            break
        pairs.append((name, [value.lstrip(" \t")]))
    return [HeaderPair(name, "".join(parts).rstrip("\r\n")) for name, parts in pairs]


def decode_header_value(value: str) -> str:
    """
    Turn a raw header value into display text.

    Unfolds continuation lines, reads raw bytes as UTF-8 (replacing
    invalid sequences) and decodes RFC 2047 encoded words where possible.
    """
    text = value.encode("utf-8", "surrogateescape").decode("utf-8", "replace")
    text = _FOLD_RE.sub("", text)
    try:
        return str(make_header(decode_header(text)))
    except (errors.HeaderParseError, LookupError, UnicodeDecodeError):
        return text


@dataclass
class ParsedMessage:
    """Structured view over a RawInput that parsed as a mail message."""
    message: Message
    headers: list[HeaderPair] = field(default_factory=list)
    mimetype: str = "text/plain"
    params: dict[str, str] = field(default_factory=dict)
    transfer_encoding: BodyEncoding = BodyEncoding.SEVEN_BIT
    # False when the parser stopped at a malformed header line. Headers are
    # still listed, but the MIME fields and body may come from the wrong place.
    headers_complete: bool = True

    def get_all_values(self, name: str) -> list[str]:
        """Decoded values of every header called ``name`` (case-insensitive), in order."""
        wanted = name.lower()
        return [decode_header_value(h.value) for h in self.headers if h.name.lower() == wanted]

    def get_body(self) -> str:
        """
        Return the body as text, with the transfer encoding undone.

        Raises:
            BodyDecodeError: multipart body, unknown charset, or bytes that
                do not decode in the declared charset (default us-ascii)
        """
        payload = self.message.get_payload(decode=True)
        if payload is None:
            raise BodyDecodeError(f"no single-part body to decode ({self.mimetype})")
        charset = self.params.get("charset", "us-ascii")
        try:
            return payload.decode(charset)
        except LookupError:
            raise BodyDecodeError(f"unknown charset {charset!r}")
        except UnicodeDecodeError as e:
            raise BodyDecodeError(f"body is not valid {charset}: {e}")


def _content_params(message: Message) -> dict[str, str]:
    params: dict[str, str] = {}
    # First entry is the content type itself.
    for key, value in (message.get_params() or [])[1:]:
        params[key.lower()] = collapse_rfc2231_value(value)
    return params


def classify(raw: RawInput) -> Optional[ParsedMessage]:
    """
    Parse ``raw`` as a mail message.

    Returns None when the input could not be read or does not start with a
    header block. A header block that breaks off after some valid headers
    still parses, flagged with headers_complete=False.
    """
    if not raw.ok:
        logger.debug("stdin could not be read, nothing to classify")
        return None

    try:
        message = BytesParser(policy=compat32).parsebytes(raw.data)
    except Exception:
        logger.debug("classify: parser raised, treating as unparseable", exc_info=True)
        return None

    headers = [HeaderPair(name, value) for name, value in message.raw_items()]
    defects = message.defects

    if any(isinstance(d, errors.FirstHeaderLineIsContinuationDefect) for d in defects):
        logger.debug("classify: input starts with a continuation line")
        return None
    if any(isinstance(d, errors.MissingHeaderBodySeparatorDefect) for d in defects):
        # The parser stops at the first name it cannot match; pick up the rest.
        scanned = scan_header_block(raw.data)
        if len(scanned) > len(headers):
            logger.debug("classify: recovered %d headers past a malformed name", len(scanned) - len(headers))
            headers = scanned
        if not headers:
            logger.debug("classify: input does not start with a header block")
            return None

    headers_complete = not any(isinstance(d, _INCOMPLETE_HEADER_DEFECTS) for d in defects)
    if not headers_complete:
        logger.debug("classify: header block is incomplete: %r", defects)

    parsed = ParsedMessage(
        message=message,
        headers=headers,
        mimetype=message.get_content_type(),
        params=_content_params(message),
        transfer_encoding=BodyEncoding.from_header(message.get("Content-Transfer-Encoding")),
        headers_complete=headers_complete,
    )
    logger.debug(
        "classified message: %d headers, %s, %s",
        len(headers), parsed.mimetype, parsed.transfer_encoding.value,
    )
    return parsed
