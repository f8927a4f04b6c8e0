"""
Pydantic model for the forward-as-attachment-mta configuration file.

The file is TOML and holds SMTP credentials, so it is expected to be
readable by the owner only (see services.report.check_config_permissions).

Example:

    sender_email = "cron@example.com"
    recipient_email = "ops@example.com"
    smtp_host = "smtp.example.com"
    smtp_username = "cron@example.com"
    smtp_password = "hunter2"
"""

from email.utils import parseaddr

from pydantic import BaseModel, field_validator


class MtaConfig(BaseModel):
    """Relay settings. Every field is required and unknown keys are rejected."""

    model_config = {"extra": "forbid", "frozen": True}

    sender_email: str
    recipient_email: str
    smtp_host: str
    smtp_username: str
    smtp_password: str

    @field_validator("sender_email", "recipient_email")
    @classmethod
    def validate_mailbox(cls, v: str) -> str:
        """
        Accept a bare mailbox address (``local@domain``).

        Display names ("Ops <ops@example.com>") are not allowed here: the
        value is used verbatim as the SMTP envelope address.
        """
        stripped = v.strip()
        if not stripped:
            raise ValueError("mailbox address must not be empty")
        _, addr = parseaddr(stripped)
        if addr != stripped:
            raise ValueError(f"not a bare mailbox address: {v!r}")
        local, sep, domain = addr.rpartition("@")
        if not sep or not local or not domain:
            raise ValueError(f"mailbox address must look like local@domain: {v!r}")
        return addr
