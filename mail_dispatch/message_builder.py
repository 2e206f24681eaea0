from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Sequence, Tuple, Union

from .errors import InvalidMessage
from .models import Attachment, EmailMessage, MessageDraft, Sender


def is_valid_address(address: str) -> bool:
    """Basic syntax check: non-empty local part, one "@", non-empty domain."""
    if not isinstance(address, str) or not address:
        return False
    if any(ch.isspace() for ch in address):
        return False
    local, sep, domain = address.rpartition("@")
    if not sep or not local or not domain:
        return False
    return "@" not in local


def build_message(draft: MessageDraft) -> EmailMessage:
    """Validate a draft and freeze it into an EmailMessage.

    Raises InvalidMessage before anything reaches a transport.
    """

    sender = _normalize_sender(draft.sender)
    recipients = _normalize_recipients(draft.recipients)

    subject = draft.subject or ""
    if not subject.strip():
        raise InvalidMessage("Subject must not be empty.")
    if _has_line_break(subject):
        raise InvalidMessage("Subject must not contain line breaks.")

    text_body = draft.text_body or ""
    html_body = draft.html_body or None
    if not text_body.strip() and not (html_body and html_body.strip()):
        raise InvalidMessage("Either text_body or html_body is required.")

    category = draft.category.strip() if draft.category and draft.category.strip() else None

    return EmailMessage(
        sender=sender,
        recipients=recipients,
        subject=subject,
        text_body=text_body,
        html_body=html_body,
        category=category,
        headers=MappingProxyType(_normalize_headers(draft.headers or {})),
        attachments=_normalize_attachments(draft.attachments or ()),
    )


def _normalize_sender(sender: Union[Sender, str]) -> Sender:
    if isinstance(sender, str):
        sender = Sender(address=sender)
    address = (sender.address or "").strip()
    if not is_valid_address(address):
        raise InvalidMessage(f"Invalid sender address: {sender.address!r}")
    display_name = sender.display_name.strip() if sender.display_name else None
    if display_name and _has_line_break(display_name):
        raise InvalidMessage("Sender display name must not contain line breaks.")
    return Sender(address=address, display_name=display_name or None)


def _normalize_recipients(recipients: Union[Sequence[str], str]) -> Tuple[str, ...]:
    if isinstance(recipients, str):
        recipients = [recipients]
    normalized = tuple((r or "").strip() for r in recipients)
    if not normalized:
        raise InvalidMessage("At least one recipient is required.")
    invalid = [r for r in normalized if not is_valid_address(r)]
    if invalid:
        raise InvalidMessage(f"Invalid recipient address(es): {', '.join(repr(r) for r in invalid)}")
    return normalized


def _normalize_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    normalized: Dict[str, str] = {}
    seen = set()
    for name, value in headers.items():
        key = (name or "").strip()
        if not key:
            raise InvalidMessage("Header names must not be empty.")
        if key.lower() in seen:
            raise InvalidMessage(f"Duplicate header: {key}")
        value = "" if value is None else str(value)
        if _has_line_break(key) or _has_line_break(value):
            raise InvalidMessage(f"Header {key} must not contain line breaks.")
        seen.add(key.lower())
        normalized[key] = value
    return normalized


def _normalize_attachments(attachments: Iterable[Attachment]) -> Tuple[Attachment, ...]:
    normalized = []
    content_ids = set()
    for attachment in attachments:
        filename = (attachment.filename or "").strip()
        if not filename or _has_line_break(filename):
            raise InvalidMessage(f"Invalid attachment filename: {attachment.filename!r}")
        content = attachment.content
        if isinstance(content, str):
            content = content.encode("utf-8")
        if not isinstance(content, (bytes, bytearray)):
            raise InvalidMessage(f"Attachment {filename} content must be bytes.")
        content_type = (attachment.content_type or "").strip().lower()
        maintype, sep, subtype = content_type.partition("/")
        if not sep or not maintype or not subtype or "/" in subtype or any(ch.isspace() for ch in content_type):
            raise InvalidMessage(f"Attachment {filename} has an invalid content type: {attachment.content_type!r}")
        content_id = None
        if attachment.content_id is not None:
            content_id = attachment.content_id.strip().strip("<>")
            if not content_id or _has_line_break(content_id) or any(ch.isspace() for ch in content_id):
                raise InvalidMessage(f"Attachment {filename} has an invalid content id: {attachment.content_id!r}")
            if content_id in content_ids:
                raise InvalidMessage(f"Duplicate attachment content id: {content_id}")
            content_ids.add(content_id)
        normalized.append(
            Attachment(filename=filename, content=bytes(content), content_type=content_type, content_id=content_id)
        )
    return tuple(normalized)


def _has_line_break(value: str) -> bool:
    return "\r" in value or "\n" in value
