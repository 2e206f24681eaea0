from __future__ import annotations

import smtplib
from typing import List

import pytest

from mail_dispatch.config import DispatcherConfig, ProviderKind
from mail_dispatch.dispatcher import Dispatcher
from mail_dispatch.errors import ErrorKind, TransportError
from mail_dispatch.message_builder import build_message
from mail_dispatch.models import Attachment, MessageDraft, Sender
from mail_dispatch.transports import SmtpTransport

CONFIG = DispatcherConfig(
    provider_kind=ProviderKind.SMTP,
    host="smtp.example.com",
    port=587,
    username="support@example.com",
    password="secret",
)


def _message(**overrides):
    values = dict(
        sender=Sender(address="support@example.com", display_name="Learn French With Natives"),
        recipients=["student@example.com"],
        subject="Bienvenue!",
        text_body="Welcome!",
        html_body="<h1>Welcome!</h1>",
        category="welcome",
        headers={"X-Priority": "1", "Importance": "high"},
    )
    values.update(overrides)
    return build_message(MessageDraft(**values))


class FakeSMTP:
    def __init__(self, host, port, secure, timeout):
        self.host = host
        self.port = port
        self.secure = secure
        self.sock = None
        self.started_tls = False
        self.logged_in = None
        self.sent: List = []
        self.noop_error: Exception | None = None
        self.login_error: Exception | None = None
        self.send_error: Exception | None = None
        self.refused = {}
        self.quit_called = False

    def ehlo(self):
        return 250, b"ok"

    def has_extn(self, name):
        return name == "starttls"

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        if self.login_error is not None:
            raise self.login_error
        self.logged_in = (user, password)

    def noop(self):
        if self.noop_error is not None:
            raise self.noop_error
        return 250, b"ok"

    def send_message(self, msg, from_addr=None, to_addrs=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((msg, from_addr, to_addrs))
        return self.refused

    def quit(self):
        self.quit_called = True

    def close(self):
        pass


class FakeFactory:
    def __init__(self):
        self.connections: List[FakeSMTP] = []
        self.on_connect = None

    def __call__(self, host, port, secure, timeout):
        conn = FakeSMTP(host, port, secure, timeout)
        if self.on_connect is not None:
            self.on_connect(conn)
        self.connections.append(conn)
        return conn


def test_send_builds_multipart_message_and_returns_message_id():
    factory = FakeFactory()
    transport = SmtpTransport(CONFIG, smtp_factory=factory)
    message_id = transport.send(_message(), timeout=5)

    conn = factory.connections[0]
    assert conn.started_tls
    assert conn.logged_in == ("support@example.com", "secret")
    mime, from_addr, to_addrs = conn.sent[0]
    assert from_addr == "support@example.com"
    assert to_addrs == ["student@example.com"]
    assert mime["Message-ID"] == message_id
    assert message_id.endswith("@example.com>")
    assert "Learn French With Natives" in mime["From"]
    assert mime["X-Category"] == "welcome"
    assert mime["Importance"] == "high"
    assert mime.get_content_type() == "multipart/alternative"


def test_connection_is_reused_across_sends():
    factory = FakeFactory()
    transport = SmtpTransport(CONFIG, smtp_factory=factory)
    transport.send(_message(), timeout=5)
    transport.send(_message(), timeout=5)
    assert len(factory.connections) == 1
    assert len(factory.connections[0].sent) == 2


def test_dropped_connection_is_reopened():
    factory = FakeFactory()
    transport = SmtpTransport(CONFIG, smtp_factory=factory)
    transport.send(_message(), timeout=5)
    factory.connections[0].noop_error = smtplib.SMTPServerDisconnected("gone")
    transport.send(_message(), timeout=5)
    assert len(factory.connections) == 2
    assert len(factory.connections[1].sent) == 1


def test_secure_connection_skips_starttls():
    factory = FakeFactory()
    config = DispatcherConfig(provider_kind=ProviderKind.SMTP, host="smtp.example.com")
    SmtpTransport(config, smtp_factory=factory).send(_message(), timeout=5)
    conn = factory.connections[0]
    assert conn.port == 465
    assert conn.secure is True
    assert not conn.started_tls
    assert conn.logged_in is None


def test_html_only_message_is_single_part():
    factory = FakeFactory()
    SmtpTransport(CONFIG, smtp_factory=factory).send(_message(text_body="", html_body="<p>x</p>"), timeout=5)
    mime = factory.connections[0].sent[0][0]
    assert mime.get_content_type() == "text/html"


@pytest.mark.parametrize(
    "error, kind",
    [
        (smtplib.SMTPRecipientsRefused({"x@example.com": (550, b"no such user")}), ErrorKind.PROVIDER_REJECTED),
        (smtplib.SMTPDataError(554, b"spam"), ErrorKind.PROVIDER_REJECTED),
        (smtplib.SMTPServerDisconnected("closed"), ErrorKind.CONNECTION_FAILED),
        (TimeoutError("timed out"), ErrorKind.TIMEOUT),
        (ConnectionRefusedError("refused"), ErrorKind.CONNECTION_FAILED),
        (smtplib.SMTPResponseException(451, b"try later"), ErrorKind.UNKNOWN),
    ],
)
def test_send_errors_are_classified(error, kind):
    factory = FakeFactory()

    def _fail(conn):
        conn.send_error = error

    factory.on_connect = _fail
    transport = SmtpTransport(CONFIG, smtp_factory=factory)
    with pytest.raises(TransportError) as excinfo:
        transport.send(_message(), timeout=5)
    assert excinfo.value.kind is kind


def test_auth_failure_through_dispatcher_is_a_result():
    factory = FakeFactory()

    def _reject_login(conn):
        conn.login_error = smtplib.SMTPAuthenticationError(535, b"Authentication failed")

    factory.on_connect = _reject_login
    dispatcher = Dispatcher(CONFIG, transport=SmtpTransport(CONFIG, smtp_factory=factory))
    result = dispatcher.send(_message())
    assert result.error_kind is ErrorKind.AUTHENTICATION_FAILED
    assert factory.connections[0].quit_called


def test_verify_raises_transport_error_on_bad_login():
    factory = FakeFactory()

    def _reject_login(conn):
        conn.login_error = smtplib.SMTPAuthenticationError(535, b"Authentication failed")

    factory.on_connect = _reject_login
    with pytest.raises(TransportError) as excinfo:
        SmtpTransport(CONFIG, smtp_factory=factory).verify(timeout=5)
    assert excinfo.value.kind is ErrorKind.AUTHENTICATION_FAILED


def test_close_quits_open_connection():
    factory = FakeFactory()
    transport = SmtpTransport(CONFIG, smtp_factory=factory)
    transport.verify(timeout=5)
    transport.close()
    assert factory.connections[0].quit_called


LOGO = Attachment(filename="logo.png", content=b"\x89PNG-logo", content_type="image/png", content_id="logo")
REPORT = Attachment(filename="report.pdf", content=b"%PDF-1.4", content_type="application/pdf")


def test_inline_image_is_related_to_html_and_file_is_attached():
    factory = FakeFactory()
    message = _message(html_body='<img src="cid:logo"><h1>Welcome!</h1>', attachments=[LOGO, REPORT])
    SmtpTransport(CONFIG, smtp_factory=factory).send(message, timeout=5)
    mime = factory.connections[0].sent[0][0]

    assert [part.get_content_type() for part in mime.walk()] == [
        "multipart/mixed",
        "multipart/alternative",
        "text/plain",
        "multipart/related",
        "text/html",
        "image/png",
        "application/pdf",
    ]
    parts = {part.get_content_type(): part for part in mime.walk()}
    logo = parts["image/png"]
    assert logo["Content-ID"] == "<logo>"
    assert logo.get_content_disposition() == "inline"
    assert logo.get_content() == b"\x89PNG-logo"
    report = parts["application/pdf"]
    assert report.get_filename() == "report.pdf"
    assert report.get_content_disposition() == "attachment"
    assert report.get_content() == b"%PDF-1.4"


def test_inline_part_without_html_body_is_attached():
    factory = FakeFactory()
    SmtpTransport(CONFIG, smtp_factory=factory).send(_message(html_body=None, attachments=[LOGO]), timeout=5)
    mime = factory.connections[0].sent[0][0]
    assert mime.get_content_type() == "multipart/mixed"
    logo = [part for part in mime.walk() if part.get_content_type() == "image/png"][0]
    assert logo["Content-ID"] == "<logo>"
    assert logo.get_filename() == "logo.png"
