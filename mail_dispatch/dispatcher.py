from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, wait
from typing import Callable, Iterable, List, Optional, TypeVar

from .config import DispatcherConfig
from .errors import ConfigurationError, ErrorKind, MailError
from .models import DispatchResult, EmailMessage
from .transports import Transport, build_transport

logger = logging.getLogger(__name__)

T = TypeVar("T")

# How often a waiting send re-checks its cancel event.
_CANCEL_POLL_SECONDS = 0.05


class Dispatcher:
    """Owns one transport and turns every send into a DispatchResult.

    Each call runs on a short-lived daemon thread so the caller can stop
    waiting at the timeout or on cancellation. A call already talking to the
    provider when abandoned keeps running until the transport's own socket
    timeout; its result is discarded. Transports that are not thread-safe are
    serialized behind a lock. Waiting for the lock counts against the caller's
    timeout, and a call still queued for the lock when the caller gives up
    never reaches the provider.
    No retries, no deduplication: two sends are two provider calls.
    """

    def __init__(self, config: DispatcherConfig, transport: Optional[Transport] = None):
        config.validate()
        self._config = config
        self._transport = transport if transport is not None else build_transport(config)
        self._lock: Optional[threading.Lock] = None if self._transport.thread_safe else threading.Lock()
        logger.info(
            "Dispatcher ready with provider=%s (serialized=%s)",
            self._transport.provider,
            self._lock is not None,
        )

    @property
    def provider(self) -> str:
        return self._transport.provider

    def send(
        self,
        message: EmailMessage,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DispatchResult:
        provider = self._transport.provider
        bound = self._config.timeout if timeout is None else timeout
        logger.info("Sending email to %s recipient(s) via %s: %s", len(message.recipients), provider, message.subject)

        future = self._run_in_background(lambda: self._transport.send(message, bound), "send")
        outcome = self._await(future, bound, cancel_event)
        if outcome is not None:
            kind, detail = outcome
            logger.warning("Send via %s failed (%s): %s", provider, kind.value, detail)
            return DispatchResult.failed(provider, kind, detail)

        exc = future.exception()
        if exc is not None:
            kind = exc.kind if isinstance(exc, MailError) else ErrorKind.UNKNOWN
            detail = str(exc) or exc.__class__.__name__
            logger.warning("Send via %s failed (%s): %s", provider, kind.value, detail)
            return DispatchResult.failed(provider, kind, detail)

        message_id = future.result()
        if message_id is None:
            logger.info("Email sent via %s (provider returned no message id)", provider)
        else:
            logger.info("Email sent via %s, message id %s", provider, message_id)
        return DispatchResult.sent(provider, message_id)

    def send_many(self, messages: Iterable[EmailMessage]) -> List[DispatchResult]:
        results = [self.send(message) for message in messages]
        failed = sum(1 for r in results if not r.is_success())
        if failed:
            logger.warning("%s of %s email(s) failed", failed, len(results))
        return results

    def verify_connection(self) -> None:
        """Check reachability and credentials; raise ConfigurationError on failure."""
        bound = self._config.timeout
        future = self._run_in_background(lambda: self._transport.verify(bound), "verify")
        outcome = self._await(future, bound, None)
        if outcome is not None:
            kind, detail = outcome
            raise ConfigurationError(f"Transport verification failed ({kind.value}): {detail}")
        exc = future.exception()
        if exc is not None:
            kind = exc.kind if isinstance(exc, MailError) else ErrorKind.UNKNOWN
            raise ConfigurationError(f"Transport verification failed ({kind.value}): {exc}") from exc
        logger.info("Transport %s verified", self._transport.provider)

    def close(self) -> None:
        if self._lock is None:
            self._transport.close()
            return
        with self._lock:
            self._transport.close()

    def __enter__(self) -> "Dispatcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _run_in_background(self, call: Callable[[], T], name: str) -> "Future[T]":
        future: Future = Future()
        lock = self._lock

        def _worker() -> None:
            # The lock is taken before the future starts running, so a caller
            # that gives up while queued cancels the call outright.
            if lock is not None:
                lock.acquire()
            try:
                if not future.set_running_or_notify_cancel():
                    return
                try:
                    result = call()
                except Exception as exc:  # noqa: BLE001
                    future.set_exception(exc)
                    return
                future.set_result(result)
            finally:
                if lock is not None:
                    lock.release()

        thread = threading.Thread(target=_worker, name=f"mail-dispatch-{name}", daemon=True)
        thread.start()
        future.add_done_callback(_log_if_abandoned)
        return future

    @staticmethod
    def _await(
        future: Future,
        timeout: float,
        cancel_event: Optional[threading.Event],
    ) -> Optional[tuple[ErrorKind, str]]:
        """Wait for ``future``; return (kind, detail) if the caller stopped waiting."""
        deadline = time.monotonic() + timeout
        while True:
            if cancel_event is not None and cancel_event.is_set():
                if not _abandon(future):
                    return None
                return ErrorKind.CANCELLED, "Send cancelled by caller."
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if not _abandon(future):
                    return None
                return ErrorKind.TIMEOUT, f"No response from provider within {timeout:g}s."
            step = remaining if cancel_event is None else min(remaining, _CANCEL_POLL_SECONDS)
            done, _ = wait([future], timeout=step, return_when=FIRST_COMPLETED)
            if done:
                return None


def _abandon(future: Future) -> bool:
    """Stop waiting on ``future``; False means it already finished and its outcome stands."""
    if future.cancel():
        return True
    future.abandoned = True  # type: ignore[attr-defined]
    return not future.done()


def _log_if_abandoned(future: Future) -> None:
    if not getattr(future, "abandoned", False) or future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.info("Abandoned mail call finished with error: %s", exc)
    else:
        logger.info("Abandoned mail call finished late; result discarded")
