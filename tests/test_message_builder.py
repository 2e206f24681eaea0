from __future__ import annotations

import pytest

from mail_dispatch.errors import InvalidMessage
from mail_dispatch.message_builder import build_message, is_valid_address
from mail_dispatch.models import Attachment, MessageDraft, Sender


def _draft(**overrides) -> MessageDraft:
    values = dict(
        sender=Sender(address="hello@example.com", display_name="Learn French"),
        recipients=["student@example.com", "coach@example.org"],
        subject="Bienvenue!",
        text_body="Welcome aboard.",
        html_body="<p>Welcome aboard.</p>",
        category="Integration Test",
        headers={"X-Priority": "1"},
    )
    values.update(overrides)
    return MessageDraft(**values)


def test_build_message_copies_fields():
    message = build_message(_draft())
    assert message.sender == Sender(address="hello@example.com", display_name="Learn French")
    assert message.recipients == ("student@example.com", "coach@example.org")
    assert message.subject == "Bienvenue!"
    assert message.text_body == "Welcome aboard."
    assert message.html_body == "<p>Welcome aboard.</p>"
    assert message.category == "Integration Test"
    assert dict(message.headers) == {"X-Priority": "1"}


def test_built_message_is_immutable():
    message = build_message(_draft())
    with pytest.raises(AttributeError):
        message.subject = "changed"  # type: ignore[misc]
    with pytest.raises(TypeError):
        message.headers["X-Other"] = "x"  # type: ignore[index]


def test_draft_changes_do_not_leak_into_message():
    draft = _draft()
    message = build_message(draft)
    draft.headers["Importance"] = "high"
    draft.recipients.append("late@example.com")
    assert "Importance" not in message.headers
    assert len(message.recipients) == 2


def test_accepts_plain_sender_and_single_recipient_string():
    message = build_message(_draft(sender="hello@example.com", recipients="student@example.com"))
    assert message.sender == Sender(address="hello@example.com")
    assert message.recipients == ("student@example.com",)


def test_html_only_message_is_valid():
    message = build_message(_draft(text_body="", html_body="<h1>Hi</h1>"))
    assert message.text_body == ""
    assert message.html_body == "<h1>Hi</h1>"


def test_empty_recipients_rejected():
    with pytest.raises(InvalidMessage):
        build_message(_draft(recipients=[]))


def test_both_bodies_empty_rejected():
    with pytest.raises(InvalidMessage):
        build_message(_draft(text_body="", html_body=None))
    with pytest.raises(InvalidMessage):
        build_message(_draft(text_body="  ", html_body=""))


@pytest.mark.parametrize("address", ["not-an-email", "@example.com", "user@", "a b@example.com", "a@b@c"])
def test_malformed_recipient_rejected(address):
    with pytest.raises(InvalidMessage):
        build_message(_draft(recipients=["ok@example.com", address]))


def test_malformed_sender_rejected():
    with pytest.raises(InvalidMessage):
        build_message(_draft(sender="not-an-email"))


def test_empty_subject_rejected():
    with pytest.raises(InvalidMessage):
        build_message(_draft(subject="   "))


def test_line_breaks_in_subject_or_header_rejected():
    with pytest.raises(InvalidMessage):
        build_message(_draft(subject="Hi\r\nBcc: victim@example.com"))
    with pytest.raises(InvalidMessage):
        build_message(_draft(headers={"X-Tag": "a\nb"}))


def test_duplicate_header_names_rejected_case_insensitively():
    with pytest.raises(InvalidMessage):
        build_message(_draft(headers={"Importance": "high", "importance": "low"}))


def test_is_valid_address():
    assert is_valid_address("support@learnfrenchwithnatives.com")
    assert not is_valid_address("")
    assert not is_valid_address("no-at-sign")


def test_attachments_are_normalized():
    message = build_message(
        _draft(
            attachments=[
                Attachment(filename=" logo.png ", content=b"png", content_type="Image/PNG", content_id=" <logo> "),
                Attachment(filename="notes.txt", content="héllo"),  # type: ignore[arg-type]
            ]
        )
    )
    logo, notes = message.attachments
    assert logo == Attachment(filename="logo.png", content=b"png", content_type="image/png", content_id="logo")
    assert logo.inline
    assert notes.content == "héllo".encode("utf-8")
    assert notes.content_type == "application/octet-stream"
    assert not notes.inline


@pytest.mark.parametrize(
    "attachment",
    [
        Attachment(filename="", content=b"x"),
        Attachment(filename="a\r\nb.txt", content=b"x"),
        Attachment(filename="a.bin", content=42),  # type: ignore[arg-type]
        Attachment(filename="a.bin", content=b"x", content_type="image"),
        Attachment(filename="a.bin", content=b"x", content_type="image/png; name=a"),
        Attachment(filename="a.png", content=b"x", content_type="image/png", content_id="<>"),
        Attachment(filename="a.png", content=b"x", content_type="image/png", content_id="lo go"),
    ],
)
def test_invalid_attachment_rejected(attachment):
    with pytest.raises(InvalidMessage):
        build_message(_draft(attachments=[attachment]))


def test_duplicate_content_ids_rejected():
    first = Attachment(filename="a.png", content=b"a", content_type="image/png", content_id="logo")
    second = Attachment(filename="b.png", content=b"b", content_type="image/png", content_id="<logo>")
    with pytest.raises(InvalidMessage, match="logo"):
        build_message(_draft(attachments=[first, second]))
