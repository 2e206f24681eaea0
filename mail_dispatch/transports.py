from __future__ import annotations

import base64
import json
import logging
import smtplib
import socket
import ssl
import threading
import urllib.error
import uuid
from email.message import EmailMessage as MimeMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import Any, Callable, Dict, Optional, Protocol

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import (
    Attachment as SendGridAttachment,
    Category,
    ContentId,
    Disposition,
    Email,
    FileContent,
    FileName,
    FileType,
    Header,
    Mail,
)

from .config import (
    MAILTRAP_ACCOUNTS_URL,
    MAILTRAP_SANDBOX_URL,
    MAILTRAP_SEND_URL,
    DispatcherConfig,
    ProviderKind,
)
from .errors import ConfigurationError, ErrorKind, TransportError, kind_for_status
from .models import Attachment, EmailMessage, Sender

logger = logging.getLogger(__name__)


class Transport(Protocol):
    provider: str
    # False means the dispatcher must serialize calls to send/verify/close.
    thread_safe: bool

    # None means the provider accepted the message without returning an id.
    def send(self, message: EmailMessage, timeout: float) -> Optional[str]: ...

    def verify(self, timeout: float) -> None: ...

    def close(self) -> None: ...


def _format_sender(sender: Sender) -> str:
    if sender.display_name:
        return formataddr((sender.display_name, sender.address))
    return sender.address


# --------------------------------
# SMTP account


SmtpFactory = Callable[[str, int, bool, float], smtplib.SMTP]


def _default_smtp_factory(host: str, port: int, secure: bool, timeout: float) -> smtplib.SMTP:
    if secure:
        return smtplib.SMTP_SSL(host, port, timeout=timeout, context=ssl.create_default_context())
    return smtplib.SMTP(host, port, timeout=timeout)


class SmtpTransport:
    """Sends through one persistent SMTP connection, reconnecting when it drops.

    smtplib connections are not safe for concurrent use, so ``thread_safe`` is
    False and the dispatcher serializes access.
    """

    provider = "smtp"
    thread_safe = False

    def __init__(self, config: DispatcherConfig, smtp_factory: Optional[SmtpFactory] = None):
        self._host = (config.host or "").strip()
        self._port = config.smtp_port
        self._secure = config.smtp_secure
        self._username = config.username.strip() if config.username else None
        self._password = config.password
        self._smtp_factory = smtp_factory or _default_smtp_factory
        self._conn: Optional[smtplib.SMTP] = None

    def send(self, message: EmailMessage, timeout: float) -> str:
        mime = self._to_mime(message)
        try:
            conn = self._connection(timeout)
            refused = conn.send_message(
                mime,
                from_addr=message.sender.address,
                to_addrs=list(message.recipients),
            )
        except (smtplib.SMTPException, OSError) as exc:
            error = _classify_smtp_error(exc)
            if error.kind is not ErrorKind.PROVIDER_REJECTED:
                self._reset()
            raise error from exc
        if refused:
            logger.warning("SMTP server refused %s recipient(s): %s", len(refused), sorted(refused))
        return str(mime["Message-ID"])

    def verify(self, timeout: float) -> None:
        try:
            self._connection(timeout)
        except (smtplib.SMTPException, OSError) as exc:
            self._reset()
            raise _classify_smtp_error(exc) from exc

    def close(self) -> None:
        self._reset()

    def _connection(self, timeout: float) -> smtplib.SMTP:
        if self._conn is not None:
            try:
                if self._conn.sock is not None:
                    self._conn.sock.settimeout(timeout)
                code, _ = self._conn.noop()
                if code == 250:
                    return self._conn
            except (smtplib.SMTPException, OSError):
                logger.info("SMTP connection to %s dropped; reconnecting", self._host)
            self._reset()

        logger.info("Connecting to SMTP %s:%s (secure=%s)", self._host, self._port, self._secure)
        conn = self._smtp_factory(self._host, self._port, self._secure, timeout)
        try:
            if not self._secure:
                conn.ehlo()
                if conn.has_extn("starttls"):
                    conn.starttls(context=ssl.create_default_context())
                    conn.ehlo()
            if self._username:
                conn.login(self._username, self._password or "")
        except (smtplib.SMTPException, OSError):
            _close_quietly(conn)
            raise
        self._conn = conn
        return conn

    def _reset(self) -> None:
        if self._conn is not None:
            _close_quietly(self._conn)
            self._conn = None

    @staticmethod
    def _to_mime(message: EmailMessage) -> MimeMessage:
        mime = MimeMessage()
        mime["From"] = _format_sender(message.sender)
        mime["To"] = ", ".join(message.recipients)
        mime["Subject"] = message.subject
        mime["Date"] = formatdate(localtime=True)
        mime["Message-ID"] = make_msgid(domain=message.sender.address.rpartition("@")[2])
        if message.category:
            mime["X-Category"] = message.category
        for name, value in message.headers.items():
            if name in mime:
                mime.replace_header(name, value)
            else:
                mime[name] = value

        if message.text_body:
            mime.set_content(message.text_body)
            if message.html_body:
                mime.add_alternative(message.html_body, subtype="html")
        else:
            mime.set_content(message.html_body or "", subtype="html")

        # Inline parts go into a multipart/related next to the HTML body;
        # without an HTML body they are plain attachments.
        html_part = mime.get_body(preferencelist=("html",)) if message.html_body else None
        for attachment in message.attachments:
            if html_part is None or not attachment.inline:
                continue
            html_part.add_related(
                attachment.content,
                maintype=attachment.maintype,
                subtype=attachment.subtype,
                cid=f"<{attachment.content_id}>",
                filename=attachment.filename,
                disposition="inline",
            )
        for attachment in message.attachments:
            if html_part is not None and attachment.inline:
                continue
            mime.add_attachment(
                attachment.content,
                maintype=attachment.maintype,
                subtype=attachment.subtype,
                filename=attachment.filename,
                cid=f"<{attachment.content_id}>" if attachment.inline else None,
            )
        return mime


def _close_quietly(conn: smtplib.SMTP) -> None:
    try:
        conn.quit()
    except (smtplib.SMTPException, OSError):
        conn.close()


def _classify_smtp_error(exc: BaseException) -> TransportError:
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return TransportError(ErrorKind.AUTHENTICATION_FAILED, f"SMTP authentication failed: {exc}")
    if isinstance(exc, (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused, smtplib.SMTPDataError)):
        return TransportError(ErrorKind.PROVIDER_REJECTED, f"SMTP server rejected the message: {exc}")
    if isinstance(exc, (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)):
        return TransportError(ErrorKind.CONNECTION_FAILED, f"SMTP connection failed: {exc}")
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return TransportError(ErrorKind.TIMEOUT, f"SMTP call timed out: {exc}")
    if isinstance(exc, smtplib.SMTPResponseException) and exc.smtp_code >= 500:
        return TransportError(ErrorKind.PROVIDER_REJECTED, f"SMTP server rejected the message: {exc}")
    if isinstance(exc, smtplib.SMTPException):
        return TransportError(ErrorKind.UNKNOWN, f"SMTP send failed: {exc}")
    if isinstance(exc, OSError):
        return TransportError(ErrorKind.CONNECTION_FAILED, f"SMTP connection failed: {exc}")
    return TransportError(ErrorKind.UNKNOWN, f"SMTP send failed: {exc}")


# --------------------------------
# Mailtrap send / sandbox API


class SandboxApiTransport:
    """Mailtrap email API over a shared httpx client (thread-safe)."""

    provider = "mailtrap"
    thread_safe = True

    def __init__(self, config: DispatcherConfig, http_client: Optional[httpx.Client] = None):
        token = (config.api_token or "").strip()
        inbox_id = (config.sandbox_inbox_id or "").strip()
        self._url = f"{MAILTRAP_SANDBOX_URL}/{inbox_id}" if inbox_id else MAILTRAP_SEND_URL
        self._headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        self._client = http_client or httpx.Client(timeout=config.timeout)

    def send(self, message: EmailMessage, timeout: float) -> str:
        sender: Dict[str, str] = {"email": message.sender.address}
        if message.sender.display_name:
            sender["name"] = message.sender.display_name
        payload: Dict[str, Any] = {
            "from": sender,
            "to": [{"email": r} for r in message.recipients],
            "subject": message.subject,
        }
        if message.text_body:
            payload["text"] = message.text_body
        if message.html_body:
            payload["html"] = message.html_body
        if message.category:
            payload["category"] = message.category
        if message.headers:
            payload["headers"] = dict(message.headers)
        if message.attachments:
            payload["attachments"] = [_mailtrap_attachment(a) for a in message.attachments]

        response = self._request("POST", self._url, timeout, json=payload)
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(ErrorKind.UNKNOWN, f"Mailtrap returned a non-JSON response: {exc}") from exc
        message_ids = data.get("message_ids") or []
        if not data.get("success", False) or not message_ids:
            raise TransportError(ErrorKind.UNKNOWN, f"Mailtrap did not confirm the send: {data}")
        logger.info("Mailtrap accepted message with status %s", response.status_code)
        return str(message_ids[0])

    def verify(self, timeout: float) -> None:
        self._request("GET", MAILTRAP_ACCOUNTS_URL, timeout)

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, url: str, timeout: float, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, url, headers=self._headers, timeout=timeout, **kwargs)
            response.raise_for_status()
            return response
        except httpx.TimeoutException as exc:
            raise TransportError(ErrorKind.TIMEOUT, f"Mailtrap request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransportError(ErrorKind.CONNECTION_FAILED, f"Mailtrap request failed: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise TransportError(
                kind_for_status(status),
                f"Mailtrap returned error status {status}: {_http_error_detail(exc.response)}",
            ) from exc


def _b64(attachment: Attachment) -> str:
    return base64.b64encode(attachment.content).decode("ascii")


def _mailtrap_attachment(attachment: Attachment) -> Dict[str, str]:
    item = {
        "content": _b64(attachment),
        "filename": attachment.filename,
        "type": attachment.content_type,
        "disposition": "inline" if attachment.inline else "attachment",
    }
    if attachment.inline:
        item["content_id"] = attachment.content_id
    return item


def _http_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(data, dict):
        errors = data.get("errors") or data.get("error")
        if isinstance(errors, list):
            return "; ".join(str(e) for e in errors)
        if errors:
            return str(errors)
    return str(data)[:500]


# --------------------------------
# SendGrid


class SendGridTransport:
    # python-http-client mutates shared state per request; serialize it.
    provider = "sendgrid"
    thread_safe = False

    def __init__(self, config: DispatcherConfig, client: Optional[Any] = None):
        self._client = client or SendGridAPIClient((config.api_token or "").strip())

    def send(self, message: EmailMessage, timeout: float) -> Optional[str]:
        mail = Mail(
            from_email=Email(email=message.sender.address, name=message.sender.display_name),
            to_emails=list(message.recipients),
            subject=message.subject,
            plain_text_content=message.text_body or None,
            html_content=message.html_body,
        )
        if message.category:
            mail.add_category(Category(message.category))
        for name, value in message.headers.items():
            mail.add_header(Header(name, value))
        for attachment in message.attachments:
            mail.add_attachment(
                SendGridAttachment(
                    FileContent(_b64(attachment)),
                    FileName(attachment.filename),
                    FileType(attachment.content_type),
                    Disposition("inline" if attachment.inline else "attachment"),
                    ContentId(attachment.content_id) if attachment.inline else None,
                )
            )

        self._apply_timeout(timeout)
        try:
            response = self._client.send(mail)
        except Exception as exc:  # noqa: BLE001
            raise _classify_sendgrid_error(exc) from exc
        if response.status_code >= 400:
            raise TransportError(
                kind_for_status(response.status_code),
                f"SendGrid returned error status: {response.status_code}",
            )
        logger.info("SendGrid accepted message with status %s", response.status_code)
        headers = getattr(response, "headers", None) or {}
        message_id = headers.get("X-Message-Id")
        if not message_id:
            logger.warning("SendGrid response carried no X-Message-Id header")
            return None
        return str(message_id)

    def verify(self, timeout: float) -> None:
        self._apply_timeout(timeout)
        try:
            response = self._client.client.scopes.get()
        except Exception as exc:  # noqa: BLE001
            raise _classify_sendgrid_error(exc) from exc
        if response.status_code >= 400:
            raise TransportError(
                kind_for_status(response.status_code),
                f"SendGrid returned error status: {response.status_code}",
            )

    def close(self) -> None:
        # SendGrid opens a new HTTP connection per request; nothing to release.
        return None

    def _apply_timeout(self, timeout: float) -> None:
        http_client = getattr(self._client, "client", None)
        if http_client is not None:
            http_client.timeout = timeout


def _classify_sendgrid_error(exc: Exception) -> TransportError:
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return TransportError(kind_for_status(status_code), f"SendGrid returned error status {status_code}: {exc}")
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return TransportError(ErrorKind.TIMEOUT, f"SendGrid request timed out: {exc}")
    if isinstance(exc, urllib.error.URLError):
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            return TransportError(ErrorKind.TIMEOUT, f"SendGrid request timed out: {exc}")
        return TransportError(ErrorKind.CONNECTION_FAILED, f"SendGrid request failed: {exc}")
    if isinstance(exc, OSError):
        return TransportError(ErrorKind.CONNECTION_FAILED, f"SendGrid request failed: {exc}")
    return TransportError(ErrorKind.UNKNOWN, f"Failed to send email: {exc}")


# --------------------------------
# Amazon SES (v2)


_SES_AUTH_CODES = {
    "AccessDeniedException",
    "ExpiredTokenException",
    "InvalidClientTokenId",
    "InvalidSignatureException",
    "SignatureDoesNotMatch",
    "UnrecognizedClientException",
}

_SES_REJECTED_CODES = {
    "AccountSuspendedException",
    "BadRequestException",
    "LimitExceededException",
    "MailFromDomainNotVerifiedException",
    "MessageRejected",
    "NotFoundException",
    "SendingPausedException",
    "TooManyRequestsException",
}


class SesTransport:
    """Amazon SES v2 ``send_email`` with simple content.

    botocore fixes socket timeouts when a client is built, so one client is
    kept per timeout bound and reused; each is built with no retries. A client
    passed in is used for every bound as is.
    """

    provider = "ses"
    thread_safe = True

    def __init__(self, config: DispatcherConfig, client: Optional[Any] = None):
        self._injected = client
        self._clients: Dict[float, Any] = {}
        self._clients_lock = threading.Lock()
        if client is not None:
            return
        self._client_kwargs: Dict[str, Any] = {"region_name": (config.aws_region or "").strip()}
        if config.aws_access_key_id and config.aws_secret_access_key:
            self._client_kwargs["aws_access_key_id"] = config.aws_access_key_id.strip()
            self._client_kwargs["aws_secret_access_key"] = config.aws_secret_access_key.strip()
            if config.aws_session_token:
                self._client_kwargs["aws_session_token"] = config.aws_session_token.strip()
        # boto3.client() shares the default session, which is not thread-safe.
        self._session = boto3.session.Session()
        self._client_for(config.timeout)

    def _client_for(self, timeout: float) -> Any:
        if self._injected is not None:
            return self._injected
        with self._clients_lock:
            client = self._clients.get(timeout)
            if client is None:
                client = self._session.client(
                    "sesv2",
                    config=BotoConfig(
                        connect_timeout=timeout,
                        read_timeout=timeout,
                        retries={"total_max_attempts": 1, "mode": "standard"},
                    ),
                    **self._client_kwargs,
                )
                self._clients[timeout] = client
            return client

    def send(self, message: EmailMessage, timeout: float) -> str:
        body: Dict[str, Dict[str, str]] = {}
        if message.text_body:
            body["Text"] = {"Data": message.text_body, "Charset": "UTF-8"}
        if message.html_body:
            body["Html"] = {"Data": message.html_body, "Charset": "UTF-8"}

        simple: Dict[str, Any] = {
            "Subject": {"Data": message.subject, "Charset": "UTF-8"},
            "Body": body,
        }
        if message.headers:
            simple["Headers"] = [{"Name": k, "Value": v} for k, v in message.headers.items()]
        if message.attachments:
            simple["Attachments"] = [_ses_attachment(a) for a in message.attachments]

        request: Dict[str, Any] = {
            "FromEmailAddress": _format_sender(message.sender),
            "Destination": {"ToAddresses": list(message.recipients)},
            "Content": {"Simple": simple},
        }
        if message.category:
            request["EmailTags"] = [{"Name": "category", "Value": message.category}]

        try:
            response = self._client_for(timeout).send_email(**request)
        except (ClientError, BotoCoreError) as exc:
            raise _classify_ses_error(exc) from exc
        status_code = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        logger.info("SES accepted message with status %s", status_code)
        return str(response["MessageId"])

    def verify(self, timeout: float) -> None:
        try:
            self._client_for(timeout).get_account()
        except (ClientError, BotoCoreError) as exc:
            raise _classify_ses_error(exc) from exc

    def close(self) -> None:
        with self._clients_lock:
            clients = list(self._clients.values())
            self._clients.clear()
        if self._injected is not None:
            clients.append(self._injected)
        for client in clients:
            close = getattr(client, "close", None)
            if close is not None:
                close()


def _ses_attachment(attachment: Attachment) -> Dict[str, Any]:
    item: Dict[str, Any] = {
        "RawContent": attachment.content,
        "ContentDisposition": "INLINE" if attachment.inline else "ATTACHMENT",
        "FileName": attachment.filename,
        "ContentType": attachment.content_type,
    }
    if attachment.inline:
        item["ContentId"] = attachment.content_id
    return item


def _classify_ses_error(exc: Exception) -> TransportError:
    if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError)):
        return TransportError(ErrorKind.TIMEOUT, f"SES call timed out: {exc}")
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError)):
        return TransportError(ErrorKind.CONNECTION_FAILED, f"SES endpoint unreachable: {exc}")
    if isinstance(exc, NoCredentialsError):
        return TransportError(ErrorKind.AUTHENTICATION_FAILED, f"SES credentials missing: {exc}")
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in _SES_AUTH_CODES:
            return TransportError(ErrorKind.AUTHENTICATION_FAILED, f"SES rejected credentials: {exc}")
        if code in _SES_REJECTED_CODES:
            return TransportError(ErrorKind.PROVIDER_REJECTED, f"SES rejected the message: {exc}")
        status_code = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return TransportError(kind_for_status(status_code), f"SES returned error: {exc}")
    return TransportError(ErrorKind.UNKNOWN, f"Failed to send email: {exc}")


# --------------------------------
# JSON (no network)


class JsonTransport:
    """Renders messages as JSON into the log instead of sending them."""

    provider = "json"
    thread_safe = True

    def send(self, message: EmailMessage, timeout: float) -> str:
        message_id = f"<{uuid.uuid4()}@json-transport>"
        rendered = json.dumps(
            {
                "messageId": message_id,
                "from": _format_sender(message.sender),
                "to": list(message.recipients),
                "subject": message.subject,
                "text": message.text_body,
                "html": message.html_body,
                "category": message.category,
                "headers": dict(message.headers),
                "attachments": [
                    {
                        "filename": a.filename,
                        "contentType": a.content_type,
                        "size": len(a.content),
                        "cid": a.content_id,
                    }
                    for a in message.attachments
                ],
            },
            ensure_ascii=False,
        )
        logger.info("JSON transport (email NOT sent): %s", rendered)
        return message_id

    def verify(self, timeout: float) -> None:
        return None

    def close(self) -> None:
        return None


def build_transport(config: DispatcherConfig) -> Transport:
    """Create the transport for ``config.provider_kind``. The config must already be validated."""
    kind = ProviderKind(config.provider_kind)
    if kind is ProviderKind.SMTP:
        return SmtpTransport(config)
    if kind is ProviderKind.SANDBOX_API:
        return SandboxApiTransport(config)
    if kind is ProviderKind.SENDGRID:
        return SendGridTransport(config)
    if kind is ProviderKind.SES:
        return SesTransport(config)
    if kind is ProviderKind.JSON:
        return JsonTransport()
    raise ConfigurationError(f"Unsupported provider kind: {config.provider_kind!r}")
