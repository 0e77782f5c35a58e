"""
senders.py
==========
Outbound message delivery.

The engine only sees ``NotificationSender.send``. Two implementations ship:
 - HttpEmailSender  (production, JSON e-mail API over requests)
 - ConsoleSender    (local demo, logs instead of sending)
Use make_sender() to pick one from configuration.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import backoff
import requests

from .config import (
    EMAIL_API_KEY, EMAIL_API_URL, EMAIL_FROM_ADDRESS, EMAIL_PROVIDER,
    SEND_MAX_TRIES, SEND_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    """Outcome of one send, after any retries."""
    ok: bool
    error: Optional[str] = None
    attempts: int = 1


class NotificationSender:
    """
    Interface consumed by the fan-out.
    Implementations must not raise for delivery problems; they report them
    through SendResult. The fan-out still guards against ones that do.
    """

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> SendResult:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# HTTP e-mail API
# ---------------------------------------------------------------------------

def _is_client_error(exc: Exception) -> bool:
    """4xx answers other than 429 Too Many Requests are not worth retrying."""
    response = getattr(exc, "response", None)
    if response is None:
        return False
    return 400 <= response.status_code < 500 and response.status_code != 429


class HttpEmailSender(NotificationSender):
    """
    Posts messages to a JSON e-mail API (Resend compatible payload).
    Transport errors and 5xx answers are retried up to ``max_tries`` with
    exponential backoff, and so is 429; other 4xx answers fail immediately.
    """

    def __init__(
        self,
        api_url: str = EMAIL_API_URL,
        api_key: Optional[str] = EMAIL_API_KEY,
        from_address: str = EMAIL_FROM_ADDRESS,
        timeout: float = SEND_TIMEOUT_SECONDS,
        max_tries: int = SEND_MAX_TRIES,
        backoff_factor: float = 1.0,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout
        self.max_tries = max(1, max_tries)
        self.backoff_factor = backoff_factor

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> SendResult:
        if not self.api_key:
            return SendResult(ok=False, error="EMAIL_API_KEY not configured", attempts=0)

        attempts = 0

        @backoff.on_exception(
            backoff.expo,
            requests.RequestException,
            max_tries=self.max_tries,
            giveup=_is_client_error,
            factor=self.backoff_factor,
            jitter=None,
            logger=logger,
        )
        def _post():
            nonlocal attempts
            attempts += 1
            resp = requests.post(
                self.api_url,
                json={
                    "from": self.from_address,
                    "to": [to],
                    "subject": subject,
                    "html": html_body,
                    "text": text_body,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp

        try:
            _post()
        except requests.RequestException as e:
            logger.error(f"❌ Email to {to} failed after {attempts} attempt(s): {e}")
            return SendResult(ok=False, error=str(e), attempts=attempts)

        return SendResult(ok=True, attempts=attempts)


# ---------------------------------------------------------------------------
# Console (demo mode)
# ---------------------------------------------------------------------------

class ConsoleSender(NotificationSender):
    """Logs every message instead of delivering it."""

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> SendResult:
        logger.info(f"📧 [console] to={to} subject={subject!r}\n{text_body}")
        return SendResult(ok=True)


def make_sender(provider: str = EMAIL_PROVIDER) -> NotificationSender:
    """
    Factory function to create the configured sender.
    Example: make_sender('http'), make_sender('console').
    """
    if provider == "http":
        return HttpEmailSender()
    if provider == "console":
        return ConsoleSender()
    raise ValueError(f"Unknown EMAIL_PROVIDER: {provider}")
