from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Dict, List

from .config import Settings
from .dispatcher import Dispatcher
from .errors import ConfigurationError, InvalidMessage
from .message_builder import build_message
from .models import MessageDraft, Sender

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "Test email"
DEFAULT_TEXT = "This is a test email sent by mail-dispatch."


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Send one email through the configured mail provider.")
    parser.add_argument("--to", action="append", required=True, help="recipient address (repeatable)")
    parser.add_argument("--subject", default=DEFAULT_SUBJECT)
    parser.add_argument("--text", default=DEFAULT_TEXT, help="plain-text body")
    parser.add_argument("--html-file", default=None, help="path to an HTML body")
    parser.add_argument("--category", default=None)
    parser.add_argument("--header", action="append", default=[], help="NAME=VALUE (repeatable)")
    parser.add_argument("--verify", action="store_true", help="verify the connection before sending")
    parser.add_argument("--timeout", type=float, default=None, help="seconds to wait for the provider")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )

    try:
        settings = Settings.from_env()
    except ValueError as exc:
        logger.error("Missing configuration: %s", exc)
        return 1

    try:
        headers = _parse_headers(args.header)
        html_body = Path(args.html_file).read_text(encoding="utf-8") if args.html_file else None
        message = build_message(
            MessageDraft(
                sender=Sender(address=settings.from_email, display_name=settings.from_name),
                recipients=args.to,
                subject=args.subject,
                text_body=args.text,
                html_body=html_body,
                category=args.category,
                headers=headers,
            )
        )
    except (InvalidMessage, ValueError, OSError) as exc:
        logger.error("Invalid message: %s", exc)
        return 2

    try:
        dispatcher = Dispatcher(settings.dispatcher_config())
    except ConfigurationError as exc:
        logger.error("Mail provider misconfigured: %s", exc)
        return 1

    with dispatcher:
        if args.verify:
            try:
                dispatcher.verify_connection()
            except ConfigurationError as exc:
                logger.error("%s", exc)
                return 1
        result = dispatcher.send(message, timeout=args.timeout)

    if result.is_success():
        logger.info("Email sent via %s (message id %s)", result.provider, result.provider_message_id)
        return 0
    logger.error("Email failed via %s: %s: %s", result.provider, result.error_kind.value, result.error)
    return 1


def _parse_headers(raw: List[str]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for item in raw:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Invalid --header {item!r}; expected NAME=VALUE")
        if name.strip() in headers:
            raise ValueError(f"Duplicate --header {name.strip()!r}")
        headers[name.strip()] = value.strip()
    return headers
