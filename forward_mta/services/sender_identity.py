"""
Sender identity resolution.

Builds a short tag saying who the forwarded message came from, for use in
the outer Subject line. Two sources are considered:

  evlp  the ``-f<address>`` envelope-sender flag from the command line
  hdr   the address in the original message's single ``From`` header,
        with a fallback for cron's "user (Cron Daemon)" format

Combination:

  evlp == hdr      -> "evlp+hdr(<value>)"
  evlp != hdr      -> "evlp(<evlp>)+hdr(<hdr>)"
  only evlp        -> "evlp(<evlp>)"
  only hdr         -> "hdr(<hdr>)"
  neither          -> "???"

Values are escaped so that parentheses inside them cannot be confused with
the tag syntax.
"""

import logging
import re
from email.utils import getaddresses
from functools import cache
from typing import Optional

from forward_mta.services.classifier import ParsedMessage
from forward_mta.services.invocation import InvocationArgs

logger = logging.getLogger(__name__)

UNKNOWN_SENDER = "???"


@cache
def _cron_from_pattern() -> re.Pattern:
    return re.compile(r"(\S+) \(Cron Daemon\)")


def extract_cron_sender(header_value: str) -> Optional[str]:
    """
    Pull the user out of a cron-style From header, e.g. "root (Cron Daemon)".

    The user token is any run of non-space characters, so "(foo) (Cron Daemon))"
    yields "(foo)".
    """
    match = _cron_from_pattern().search(header_value)
    if match is None:
        return None
    return match.group(1)


def escape_parens(text: str) -> str:
    """Backslash-escape every ( and )."""
    if "(" in text:
        text = text.replace("(", r"\(")
    if ")" in text:
        text = text.replace(")", r"\)")
    return text


def envelope_sender(args: InvocationArgs) -> Optional[str]:
    """
    Return the value of the single ``-f`` flag, if there is exactly one.

    sendmail uses -f to set the envelope-from. Repeated flags give no way to
    pick one, so they count as absent. Every argument is checked, argv[0]
    included. Lossy argument lists are ignored.
    """
    if args.lossy:
        return None

    found: Optional[str] = None
    for arg in args.args:
        if not arg.startswith("-f"):
            continue
        if found is not None:
            logger.debug("multiple -f flags in %r, ignoring envelope sender", args.args)
            return None
        found = arg[2:]
    return found


def _single_address(value: str) -> tuple[bool, Optional[str]]:
    """
    Parse ``value`` as an address list.

    Returns (parsed, address): parsed is False when no well-formed
    local@domain address was found; address is set only when exactly one was.
    """
    addresses = [
        addr for _, addr in getaddresses([value])
        if "@" in addr and addr.split("@", 1)[0] and addr.rsplit("@", 1)[1]
    ]
    if not addresses:
        return False, None
    if len(addresses) > 1:
        logger.debug("From header holds %d addresses", len(addresses))
        return True, None
    return True, addresses[0]


def header_sender(parsed: Optional[ParsedMessage]) -> Optional[str]:
    """Return the address of the original message's only From header, if any."""
    if parsed is None:
        return None

    values = parsed.get_all_values("From")
    if len(values) != 1:
        logger.debug("%d From headers, ignoring header sender", len(values))
        return None
    value = values[0]

    ok, address = _single_address(value)
    if ok:
        return address

    logger.debug("From header %r is not an address, trying cron format", value)
    return extract_cron_sender(value)


def combine_sender(envelope: Optional[str], header: Optional[str]) -> str:
    evlp = escape_parens(envelope) if envelope is not None else None
    hdr = escape_parens(header) if header is not None else None

    if evlp is not None and hdr is not None:
        if evlp == hdr:
            return f"evlp+hdr({evlp})"
        return f"evlp({evlp})+hdr({hdr})"
    if evlp is not None:
        return f"evlp({evlp})"
    if hdr is not None:
        return f"hdr({hdr})"
    return UNKNOWN_SENDER


def resolve_sender(args: InvocationArgs, parsed: Optional[ParsedMessage]) -> str:
    """Derive the sender tag from the command line and the parsed message. Never raises."""
    envelope = envelope_sender(args)
    header = header_sender(parsed)
    logger.debug("sender candidates: envelope=%r header=%r", envelope, header)
    return combine_sender(envelope, header)
