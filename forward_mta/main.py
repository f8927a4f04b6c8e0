"""
forward-as-attachment-mta entry point.

Installed as ``sendmail``: reads a message on stdin, wraps it into a new
message addressed to the configured operator and relays that over SMTP.

Exit status:
  0            sent
  EX_CONFIG    configuration could not be loaded (nothing read or sent)
  EX_TEMPFAIL  SMTP delivery failed
"""

import logging
import os
import sys
from email.message import Message
from typing import BinaryIO, Optional, Sequence

from forward_mta.config import ConfigError, load_config, load_env_defaults
from forward_mta.models.config import MtaConfig
from forward_mta.services.assembler import build_message, build_subject, derive_summary
from forward_mta.services.classifier import RawInput, classify, read_stdin
from forward_mta.services.delivery import DeliveryError, send_message
from forward_mta.services.invocation import InvocationArgs
from forward_mta.services.report import PACKAGE_NAME, build_report, current_hostname
from forward_mta.services.sender_identity import resolve_sender

LOG_LEVEL_ENV = "FORWARD_AS_ATTACHMENT_MTA_LOG_LEVEL"

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """
    Send log output to stderr; stdout is reserved for the result line.

    The level comes from FORWARD_AS_ATTACHMENT_MTA_LOG_LEVEL (default WARNING).
    """
    level_name = os.getenv(LOG_LEVEL_ENV, "WARNING").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def assemble(
    config: MtaConfig,
    config_path: Optional[str],
    args: InvocationArgs,
    raw: RawInput,
    hostname: Optional[str] = None,
) -> Message:
    """Run the pipeline from raw input to the finished outer message."""
    if hostname is None:
        hostname = current_hostname()

    parsed = classify(raw)
    logger.debug("parsed message: could_parse=%s", parsed is not None)

    sender = resolve_sender(args, parsed)
    subject = build_subject(sender, hostname, derive_summary(parsed))
    report = build_report(hostname, args, config_path)

    return build_message(
        sender_email=config.sender_email,
        recipient_email=config.recipient_email,
        subject=subject,
        report=report,
        parsed=parsed,
        raw=raw,
    )


def main(argv: Optional[Sequence[str]] = None, stdin: Optional[BinaryIO] = None) -> int:
    load_env_defaults()
    configure_logging()

    try:
        config, config_path = load_config()
    except ConfigError as e:
        print(f"{PACKAGE_NAME}: {e.message}", file=sys.stderr)
        return os.EX_CONFIG

    args = InvocationArgs.from_argv(argv)
    logger.debug("args: %s", args.display())

    raw = read_stdin(stdin)
    message = assemble(config, config_path, args, raw)

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("sending message:\n%s", message.as_bytes().decode("utf-8", "replace"))

    try:
        send_message(message, config)
    except DeliveryError as e:
        print(f"Failed to send email: {e.message}")
        return os.EX_TEMPFAIL

    print("Email sent successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
