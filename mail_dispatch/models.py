from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import ErrorKind


@dataclass(frozen=True)
class Sender:
    address: str
    display_name: Optional[str] = None


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"
    # Set for inline parts referenced from the HTML body as "cid:<content_id>".
    content_id: Optional[str] = None

    @property
    def inline(self) -> bool:
        return self.content_id is not None

    @property
    def maintype(self) -> str:
        return self.content_type.partition("/")[0]

    @property
    def subtype(self) -> str:
        return self.content_type.partition("/")[2]


@dataclass
class MessageDraft:
    sender: Union[Sender, str]
    recipients: Union[Sequence[str], str]
    subject: str
    text_body: str = ""
    html_body: Optional[str] = None
    category: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    attachments: List[Attachment] = field(default_factory=list)


@dataclass(frozen=True)
class EmailMessage:
    sender: Sender
    recipients: Tuple[str, ...]
    subject: str
    text_body: str
    html_body: Optional[str] = None
    category: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    attachments: Tuple[Attachment, ...] = ()


class DispatchStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    provider: str
    # None on a Sent result only when the provider accepted without returning an id.
    provider_message_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    def is_success(self) -> bool:
        return self.status == DispatchStatus.SENT

    @classmethod
    def sent(cls, provider: str, provider_message_id: Optional[str]) -> "DispatchResult":
        return cls(status=DispatchStatus.SENT, provider=provider, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, provider: str, kind: ErrorKind, error: str) -> "DispatchResult":
        return cls(status=DispatchStatus.FAILED, provider=provider, error_kind=kind, error=error)
