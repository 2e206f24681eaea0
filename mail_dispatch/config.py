from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .errors import ConfigurationError

# --------------------------------
# Defaults

# Seconds to wait for a provider before a send is reported as a timeout
DEFAULT_TIMEOUT_SECONDS = 60.0

SMTP_SSL_PORT = 465
SMTP_SUBMISSION_PORT = 587

MAILTRAP_SEND_URL = "https://send.api.mailtrap.io/api/send"
MAILTRAP_SANDBOX_URL = "https://sandbox.api.mailtrap.io/api/send"
MAILTRAP_ACCOUNTS_URL = "https://mailtrap.io/api/accounts"
# --------------------------------


class ProviderKind(str, Enum):
    SMTP = "smtp"
    SANDBOX_API = "sandbox_api"
    SENDGRID = "sendgrid"
    SES = "ses"
    JSON = "json"


@dataclass(frozen=True)
class DispatcherConfig:
    provider_kind: ProviderKind
    host: Optional[str] = None
    port: Optional[int] = None
    secure: Optional[bool] = None
    username: Optional[str] = None
    password: Optional[str] = None
    api_token: Optional[str] = None
    sandbox_inbox_id: Optional[str] = None
    aws_region: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_session_token: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT_SECONDS

    def validate(self) -> None:
        try:
            kind = ProviderKind(self.provider_kind)
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported provider kind: {self.provider_kind!r}") from exc

        missing: List[str] = []
        if kind is ProviderKind.SMTP:
            if not _filled(self.host):
                missing.append("host")
            if _filled(self.username) != _filled(self.password):
                missing.append("password" if _filled(self.username) else "username")
        elif kind in (ProviderKind.SANDBOX_API, ProviderKind.SENDGRID):
            if not _filled(self.api_token):
                missing.append("api_token")
        elif kind is ProviderKind.SES:
            if not _filled(self.aws_region):
                missing.append("aws_region")
            if _filled(self.aws_access_key_id) != _filled(self.aws_secret_access_key):
                missing.append("aws_secret_access_key" if _filled(self.aws_access_key_id) else "aws_access_key_id")
        if missing:
            raise ConfigurationError(f"Missing configuration for provider {kind.value}: {', '.join(missing)}")

        if self.timeout is None or self.timeout <= 0:
            raise ConfigurationError("timeout must be a positive number of seconds.")
        if self.port is not None and not 0 < int(self.port) < 65536:
            raise ConfigurationError(f"Invalid port: {self.port}")

    @property
    def smtp_secure(self) -> bool:
        if self.secure is not None:
            return bool(self.secure)
        return (self.port or SMTP_SSL_PORT) == SMTP_SSL_PORT

    @property
    def smtp_port(self) -> int:
        if self.port:
            return int(self.port)
        return SMTP_SSL_PORT if self.smtp_secure else SMTP_SUBMISSION_PORT


def _filled(value: Optional[str]) -> bool:
    return value is not None and bool(str(value).strip())


@dataclass
class Settings:
    provider_kind: ProviderKind
    from_email: str
    from_name: Optional[str]
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None
    smtp_secure: Optional[bool] = None
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    mailtrap_api_token: Optional[str] = None
    mailtrap_inbox_id: Optional[str] = None
    sendgrid_api_key: Optional[str] = None
    aws_region: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_session_token: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT_SECONDS

    @staticmethod
    def from_env(provider_default: str = ProviderKind.SMTP.value) -> "Settings":
        def require(name: str) -> str:
            value = os.getenv(name)
            if value is None or not value.strip():
                raise ValueError(f"Environment variable {name} is required.")
            return value.strip()

        def optional_with_default(name: str, default: str) -> str:
            value = os.getenv(name)
            if value is None or not value.strip():
                return default
            return value.strip()

        def optional(name: str) -> str | None:
            value = os.getenv(name)
            if value is None or not value.strip():
                return None
            return value.strip()

        provider_name = optional_with_default("MAIL_PROVIDER", provider_default).lower()
        try:
            provider_kind = ProviderKind(provider_name)
        except ValueError as exc:
            supported = ", ".join(k.value for k in ProviderKind)
            raise ValueError(f"Unsupported MAIL_PROVIDER {provider_name!r}; expected one of: {supported}") from exc

        port = optional("SMTP_PORT")
        secure = optional("SMTP_SECURE")
        timeout = optional("MAIL_TIMEOUT_SECONDS")

        # An SMTP account sends as its own login unless told otherwise.
        from_email = optional("MAIL_FROM_EMAIL")
        if from_email is None and provider_kind is ProviderKind.SMTP:
            from_email = optional("SMTP_USER")
        if from_email is None:
            from_email = require("MAIL_FROM_EMAIL")

        return Settings(
            provider_kind=provider_kind,
            from_email=from_email,
            from_name=optional("MAIL_FROM_NAME"),
            smtp_host=optional("SMTP_HOST"),
            smtp_port=_parse_int("SMTP_PORT", port) if port else None,
            smtp_secure=_parse_bool("SMTP_SECURE", secure) if secure else None,
            smtp_user=optional("SMTP_USER"),
            smtp_pass=optional("SMTP_PASS"),
            mailtrap_api_token=optional("MAILTRAP_API_TOKEN"),
            mailtrap_inbox_id=optional("MAILTRAP_INBOX_ID"),
            sendgrid_api_key=optional("SENDGRID_API_KEY"),
            aws_region=optional("AWS_REGION") or optional("AWS_DEFAULT_REGION"),
            aws_access_key_id=optional("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=optional("AWS_SECRET_ACCESS_KEY"),
            aws_session_token=optional("AWS_SESSION_TOKEN"),
            timeout=_parse_float("MAIL_TIMEOUT_SECONDS", timeout) if timeout else DEFAULT_TIMEOUT_SECONDS,
        )

    def dispatcher_config(self) -> DispatcherConfig:
        api_token = None
        if self.provider_kind is ProviderKind.SANDBOX_API:
            api_token = self.mailtrap_api_token
        elif self.provider_kind is ProviderKind.SENDGRID:
            api_token = self.sendgrid_api_key
        return DispatcherConfig(
            provider_kind=self.provider_kind,
            host=self.smtp_host,
            port=self.smtp_port,
            secure=self.smtp_secure,
            username=self.smtp_user,
            password=self.smtp_pass,
            api_token=api_token,
            sandbox_inbox_id=self.mailtrap_inbox_id,
            aws_region=self.aws_region,
            aws_access_key_id=self.aws_access_key_id,
            aws_secret_access_key=self.aws_secret_access_key,
            aws_session_token=self.aws_session_token,
            timeout=self.timeout,
        )


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer: {value!r}") from exc


def _parse_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number: {value!r}") from exc


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Environment variable {name} must be true or false: {value!r}")
