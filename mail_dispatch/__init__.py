"""Transactional email dispatch over pluggable transports."""

from .config import DispatcherConfig, ProviderKind, Settings
from .dispatcher import Dispatcher
from .errors import ConfigurationError, ErrorKind, InvalidMessage, MailError, TransportError
from .message_builder import build_message, is_valid_address
from .models import Attachment, DispatchResult, DispatchStatus, EmailMessage, MessageDraft, Sender

__all__ = [
    "Attachment",
    "ConfigurationError",
    "DispatchResult",
    "DispatchStatus",
    "Dispatcher",
    "DispatcherConfig",
    "EmailMessage",
    "ErrorKind",
    "InvalidMessage",
    "MailError",
    "MessageDraft",
    "ProviderKind",
    "Sender",
    "Settings",
    "TransportError",
    "build_message",
    "is_valid_address",
]
