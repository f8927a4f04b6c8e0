"""
Configuration loading.

The config file location comes from FORWARD_AS_ATTACHMENT_MTA_CONFIG_FILE,
falling back to DEFAULT_CONFIG_PATH. Environment defaults for every caller
(cron, systemd units, ad-hoc shells) can be put in ENV_DEFAULTS_PATH, which
is loaded with python-dotenv without overriding variables already set.

Every failure here is fatal and surfaces as ConfigError, raised before
anything is read from stdin or sent.
"""

import logging
import os
import tomllib

from dotenv import load_dotenv
from pydantic import ValidationError

from forward_mta.models.config import MtaConfig

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "FORWARD_AS_ATTACHMENT_MTA_CONFIG_FILE"
DEFAULT_CONFIG_PATH = "/etc/forward-as-attachment-mta.config.toml"
ENV_DEFAULTS_PATH = "/etc/default/forward-as-attachment-mta"


class ConfigError(Exception):
    """Raised when the configuration cannot be located, read or validated."""
    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.message = message
        self.path = path


def load_env_defaults(path: str = ENV_DEFAULTS_PATH) -> bool:
    """
    Load KEY=value defaults from ``path`` into os.environ.

    Variables that are already set win. Returns True if the file existed.
    """
    if not os.path.isfile(path):
        return False
    return load_dotenv(path, override=False)


def resolve_config_path() -> str:
    """
    Return the config file path from the environment or the default.

    Undecodable bytes in the environment show up as surrogate escapes;
    such a value cannot name a file reliably and is rejected.
    """
    value = os.environ.get(CONFIG_PATH_ENV)
    if value is None:
        return DEFAULT_CONFIG_PATH
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise ConfigError(f"{CONFIG_PATH_ENV} is not valid UTF-8: {value!r}")
    return value


def load_config(path: str | None = None) -> tuple[MtaConfig, str]:
    """
    Read, parse and validate the config file.

    Returns the config together with the path it was loaded from, since the
    diagnostic report checks that file's permissions.

    Raises:
        ConfigError: on any failure (unreadable file, bad TOML, schema error)
    """
    if path is None:
        path = resolve_config_path()

    logger.debug("loading config from %s", path)
    try:
        with open(path, "rb") as fh:
            raw = tomllib.load(fh)
    except OSError as e:
        raise ConfigError(f"cannot read config file at {path!r}: {e}", path)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"config file at {path!r} is not valid TOML: {e}", path)

    try:
        config = MtaConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"invalid config file at {path!r}:\n{e}", path)

    return config, path
