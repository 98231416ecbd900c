# Copyright 2023 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Settings and logging setup for letsdns."""
import logging
import os
from dataclasses import dataclass, field, fields

from .. import errors

# Constants and Variables
VERSION = "1.0.0"
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
ENV_PREFIX = "LETSDNS_"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
CERTIFICATE_KEY_TYPES = ('ec256', 'ec384', 'rsa2048', 'rsa4096')
ACCOUNT_KEY_TYPES = ('rsa2048', 'ec256')


@dataclass
class Settings:
    """
    Runtime settings for the issuance service. Build it directly, or from `LETSDNS_*` environment variables with
    `Settings.from_env()`.

    Raises:
        letsdns.errors.InvalidSettings: When a value is out of range or unsupported.
    """
    # pylint: disable=too-many-instance-attributes
    directory: str = LETSENCRYPT_STAGING
    verify_ssl: bool = True
    user_agent: str = f"letsdns/{VERSION}"
    network_timeout: float = 10
    account_key_type: str = 'rsa2048'
    certificate_key_type: str = 'ec256'
    account_dir: str = None
    nameservers: list = field(default_factory=lambda: ['8.8.8.8', '1.1.1.1', '8.8.4.4', '1.0.0.1'])
    doh_resolvers: list = field(
        default_factory=lambda: ['https://dns.google/resolve', 'https://cloudflare-dns.com/dns-query']
    )
    min_confirmations: int = 2
    dns_query_timeout: float = 5
    dns_interval: float = 10
    dns_timeout: float = 600
    authoritative: bool = False
    poll_interval: float = 2
    poll_backoff: float = 1.5
    poll_max_interval: float = 30
    poll_max_attempts: int = 40
    poll_deadline: float = 600
    session_ttl: int = 3600
    record_retention_days: int = 90
    renewal_window_days: int = 30
    certificate_lifetime_days: int = 90
    store_dir: str = None
    max_workers: int = 4
    request_timeout: float = 30
    rate_limit_requests: int = 10
    rate_limit_window: int = 3600
    rate_limit_block: int = 3600
    rate_limit_enabled: bool = True
    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Checks every value, raising `InvalidSettings` for the first bad one."""
        positive = (
            "network_timeout", "dns_query_timeout", "dns_interval", "poll_interval", "poll_max_interval",
            "poll_deadline", "session_ttl", "record_retention_days", "certificate_lifetime_days", "max_workers",
            "request_timeout", "rate_limit_requests", "rate_limit_window"
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise errors.InvalidSettings(f"Setting '{name}' must be greater than zero.")

        for name in ("dns_timeout", "poll_max_attempts", "renewal_window_days", "rate_limit_block"):
            if getattr(self, name) < 0:
                raise errors.InvalidSettings(f"Setting '{name}' must not be negative.")

        if self.poll_backoff < 1:
            raise errors.InvalidSettings("Setting 'poll_backoff' must be at least 1.")
        if self.account_key_type not in ACCOUNT_KEY_TYPES:
            raise errors.InvalidSettings(f"Invalid account key type '{self.account_key_type}'. "
                                         f"Options {list(ACCOUNT_KEY_TYPES)}")
        if self.certificate_key_type not in CERTIFICATE_KEY_TYPES:
            raise errors.InvalidSettings(f"Invalid certificate key type '{self.certificate_key_type}'. "
                                         f"Options {list(CERTIFICATE_KEY_TYPES)}")
        if not self.nameservers:
            raise errors.InvalidSettings("At least one nameserver must be configured.")
        if not 1 <= self.min_confirmations <= len(self.nameservers):
            raise errors.InvalidSettings(
                f"Setting 'min_confirmations' must be between 1 and the number of nameservers "
                f"({len(self.nameservers)})."
            )
        if str(self.log_level).upper() not in LOG_LEVELS:
            raise errors.InvalidSettings(f"Invalid log level '{self.log_level}'. Options {list(LOG_LEVELS)}")
        self.log_level = str(self.log_level).upper()

    @classmethod
    def from_env(cls, environ: dict = None) -> 'Settings':
        """
        Builds settings from environment variables named after each field with a `LETSDNS_` prefix, e.g.
        `LETSDNS_MIN_CONFIRMATIONS=3`. Lists are comma separated and booleans accept `1/0`, `true/false`,
        `yes/no` and `on/off`. `ACME_DIRECTORY` is used when `LETSDNS_DIRECTORY` is not set.

        Args:
            environ (dict): The environment to read. Defaults to `os.environ`.

        Returns:
            Settings: The validated settings.

        Raises:
            letsdns.errors.InvalidSettings: When a value cannot be parsed or is out of range.

        Examples:
            >>> Settings.from_env({"LETSDNS_NAMESERVERS": "9.9.9.9,1.1.1.1", "LETSDNS_MIN_CONFIRMATIONS": "1"})
            Settings(directory='https://acme-staging-v02.api.letsencrypt.org/directory', ...)
        """
        environ = os.environ if environ is None else environ
        values = {}

        for setting in fields(cls):
            raw = environ.get(ENV_PREFIX + setting.name.upper())
            if raw is None and setting.name == "directory":
                raw = environ.get("ACME_DIRECTORY")
            if raw is None:
                continue
            values[setting.name] = _parse_env(setting.name, raw.strip(), setting.type)

        return cls(**values)


def _parse_env(name: str, raw: str, kind: type):
    """Converts one environment value to the type the field is declared with."""
    try:
        if kind is bool:
            if raw.lower() in ("1", "true", "yes", "on"):
                return True
            if raw.lower() in ("0", "false", "no", "off"):
                return False
            raise ValueError(raw)
        if kind is list:
            return [item.strip() for item in raw.split(",") if item.strip()]
        if kind is int:
            return int(raw)
        if kind is float:
            return float(raw)
    except ValueError as exc:
        raise errors.InvalidSettings(f"Invalid value '{raw}' for setting '{name}'.") from exc
    return raw or None


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Attaches a single stream handler to the `letsdns` logger. Calling it again only changes the level. The root
    logger is left alone.

    Args:
        level (str): The log level name.

    Returns:
        logging.Logger: The `letsdns` logger.
    """
    logger = logging.getLogger("letsdns")
    logger.setLevel(str(level).upper())

    if not any(getattr(handler, "_letsdns", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._letsdns = True    # pylint: disable=protected-access
        logger.addHandler(handler)

    return logger
