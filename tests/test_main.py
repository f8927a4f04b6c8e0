"""
End-to-end tests for the sendmail entry point.

Runs main() with a real config file, a fake stdin and argv, and a mocked
delivery gateway. Covers the success path, degraded input, fatal startup
errors and delivery failure.
"""

import io
import logging
import os
from unittest.mock import MagicMock, patch

import pytest
from forward_mta.config import CONFIG_PATH_ENV
from forward_mta.main import LOG_LEVEL_ENV, configure_logging, main
from forward_mta.services.delivery import DeliveryError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

CONFIG_TEXT = """\
sender_email = "{sender}"
recipient_email = "ops@example.com"
smtp_host = "smtp.example.com"
smtp_username = "relay"
smtp_password = "hunter2"
"""

CRON_MESSAGE = (
    b"From: root (Cron Daemon)\n"
    b"To: root\n"
    b"Subject: Cron <root@backup01> /usr/local/bin/nightly.sh\n"
    b"Content-Type: text/plain; charset=UTF-8\n"
    b"Content-Transfer-Encoding: 8bit\n"
    b"\n"
    b"rsync: 12 files transferred\n"
)

ARGV = ["/usr/sbin/sendmail", "-i", "-FCronDaemon", "-B8BITMIME", "-oem", "-oi", "-froot", "-t"]


def _config(tmp_path, sender: str = "mta@example.com") -> str:
    path = tmp_path / "config.toml"
    path.write_text(CONFIG_TEXT.format(sender=sender))
    os.chmod(path, 0o600)
    return str(path)


@pytest.fixture()
def env(tmp_path):
    """Patch environment, hostname and delivery; yields the send_message mock."""
    with patch.dict(os.environ, {CONFIG_PATH_ENV: _config(tmp_path)}), \
         patch("forward_mta.main.load_env_defaults"), \
         patch("forward_mta.main.current_hostname", return_value="backup01"), \
         patch("forward_mta.main.send_message") as mock_send:
        yield mock_send


def _sent(mock_send: MagicMock):
    mock_send.assert_called_once()
    return mock_send.call_args[0][0]


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------

class TestForwarding:

    def test_cron_message_is_forwarded(self, env, capsys):
        rc = main(ARGV, stdin=io.BytesIO(CRON_MESSAGE))

        assert rc == 0
        assert capsys.readouterr().out == "Email sent successfully\n"

        message = _sent(env)
        assert message["Subject"] == (
            "evlp+hdr(root)@backup01: Cron <root@backup01> /usr/local/bin/nightly.sh"
        )
        assert message["From"] == "mta@example.com"
        assert message["To"] == "ops@example.com"
        assert len(message.get_payload()) == 3

    def test_well_formed_message_has_three_parts(self, env):
        raw = (
            b"From: Alice <alice@example.com>\n"
            b"Subject: weekly report\n"
            b"\n"
            b"all good\n"
        )
        main(["sendmail", "-t"], stdin=io.BytesIO(raw))

        message = _sent(env)
        assert message["Subject"] == "hdr(alice@example.com)@backup01: weekly report"
        parts = message.get_payload()
        assert [p.get_content_type() for p in parts] == [
            "text/plain",
            "message/rfc822",
            "application/octet-stream",
        ]
        assert parts[2].get_payload(decode=True) == raw

    def test_report_mentions_args_but_not_message_content(self, env):
        main(ARGV, stdin=io.BytesIO(CRON_MESSAGE))

        report = _sent(env).get_payload()[0].get_payload(decode=True).decode("utf-8")
        assert 'A process on host "backup01" invoked the sendmail binary.' in report
        assert "'-FCronDaemon'" in report
        assert "nightly.sh" not in report
        assert "rsync" not in report

    def test_raw_utf8_subject_is_forwarded(self, env, capsys):
        raw = "From: root@backup01\nSubject: Sicherung grüße\n\nok\n".encode("utf-8")
        rc = main(["sendmail"], stdin=io.BytesIO(raw))

        assert rc == 0
        assert capsys.readouterr().out == "Email sent successfully\n"
        message = _sent(env)
        assert message["Subject"] == "hdr(root@backup01)@backup01: Sicherung grüße"
        assert "Subject: Sicherung grüße".encode("utf-8") in message.as_bytes()

    def test_encoded_newline_in_subject(self, env):
        raw = b"From: root@backup01\nSubject: =?utf-8?q?hi=0AX-Evil:_1?=\n\nok\n"
        assert main(["sendmail"], stdin=io.BytesIO(raw)) == 0
        message = _sent(env)
        assert message["Subject"] == "hdr(root@backup01)@backup01: hi X-Evil: 1"
        message.as_bytes()

    def test_non_ascii_header_before_subject(self, env):
        raw = b"X-F\xc3\xb6o: bar\nFrom: root@backup01\nSubject: backup\n\nbody\n"
        main(["sendmail"], stdin=io.BytesIO(raw))
        message = _sent(env)
        assert message["Subject"] == "hdr(root@backup01)@backup01: backup"
        assert len(message.get_payload()) == 2

    def test_unparseable_input(self, env):
        raw = b"\xff\xfe this is not an email\n"
        rc = main(["sendmail", "-froot@backup01"], stdin=io.BytesIO(raw))

        assert rc == 0
        message = _sent(env)
        assert message["Subject"] == "evlp(root@backup01)@backup01: (unparseable message)"
        parts = message.get_payload()
        assert len(parts) == 2
        assert parts[-1].get_payload(decode=True) == raw

    def test_empty_input(self, env):
        rc = main(["sendmail"], stdin=io.BytesIO(b""))

        assert rc == 0
        message = _sent(env)
        assert message["Subject"] == "???@backup01: (multiple Subject headers)"
        assert message.get_payload()[-1].get_payload(decode=True) == b""

    def test_stdin_read_error(self, env):
        stdin = MagicMock()
        stdin.read.side_effect = OSError(5, "Input/output error")

        rc = main(["sendmail"], stdin=stdin)

        assert rc == 0
        message = _sent(env)
        assert message["Subject"] == "???@backup01: (unparseable message)"
        attachment = message.get_payload()[-1].get_payload(decode=True)
        assert attachment.startswith(b"forward-as-attachment-mta failed to read stdin: ")


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestStartupErrors:

    def test_empty_sender_is_fatal_before_reading_stdin(self, tmp_path, capsys):
        stdin = MagicMock()
        with patch.dict(os.environ, {CONFIG_PATH_ENV: _config(tmp_path, sender="")}), \
             patch("forward_mta.main.load_env_defaults"), \
             patch("forward_mta.main.send_message") as mock_send:
            rc = main(["sendmail"], stdin=stdin)

        assert rc == os.EX_CONFIG
        stdin.read.assert_not_called()
        mock_send.assert_not_called()
        assert "forward-as-attachment-mta: invalid config file" in capsys.readouterr().err

    def test_missing_config_is_fatal(self, tmp_path, capsys):
        stdin = MagicMock()
        with patch.dict(os.environ, {CONFIG_PATH_ENV: str(tmp_path / "missing.toml")}), \
             patch("forward_mta.main.load_env_defaults"), \
             patch("forward_mta.main.send_message") as mock_send:
            rc = main(["sendmail"], stdin=stdin)

        assert rc == os.EX_CONFIG
        stdin.read.assert_not_called()
        mock_send.assert_not_called()
        assert capsys.readouterr().out == ""


class TestDeliveryFailure:

    def test_failure_is_reported_with_nonzero_exit(self, env, capsys):
        env.side_effect = DeliveryError("SMTPAuthenticationError: (535, b'bad credentials')")

        rc = main(ARGV, stdin=io.BytesIO(CRON_MESSAGE))

        assert rc == os.EX_TEMPFAIL
        assert capsys.readouterr().out == (
            "Failed to send email: SMTPAuthenticationError: (535, b'bad credentials')\n"
        )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

class TestConfigureLogging:

    def test_default_level(self):
        with patch.dict(os.environ, {}, clear=False), \
             patch("forward_mta.main.logging.basicConfig") as basic_config:
            os.environ.pop(LOG_LEVEL_ENV, None)
            configure_logging()
        assert basic_config.call_args.kwargs["level"] == logging.WARNING

    def test_level_from_env(self):
        with patch.dict(os.environ, {LOG_LEVEL_ENV: "debug"}), \
             patch("forward_mta.main.logging.basicConfig") as basic_config:
            configure_logging()
        assert basic_config.call_args.kwargs["level"] == logging.DEBUG

    def test_unknown_level_falls_back(self):
        with patch.dict(os.environ, {LOG_LEVEL_ENV: "chatty"}), \
             patch("forward_mta.main.logging.basicConfig") as basic_config:
            configure_logging()
        assert basic_config.call_args.kwargs["level"] == logging.WARNING
