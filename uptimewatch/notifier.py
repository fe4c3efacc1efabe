"""Notification sinks: terminal/log output and webhook delivery."""

import logging
import math
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TextIO

import requests

from .config import AlertsConfig, WebhookConfig
from .models import Notification, NotificationKind, Status

logger = logging.getLogger(__name__)

_GREEN = "\x1b[32m"
_RED = "\x1b[31m"
_BOLD = "\x1b[1m"
_RESET = "\x1b[0m"
_RULE = "=" * 63


class Sink(ABC):
    """Receives every notification decided by the alert engine."""

    @abstractmethod
    def send(self, notification: Notification) -> None:
        raise NotImplementedError


class TerminalSink(Sink):
    """Writes status changes as a banner to a stream and everything else to the log."""

    def __init__(self, stream: TextIO | None = None, color: bool = True) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._color = color

    def _style(self, text: str, *codes: str) -> str:
        if not self._color:
            return text
        return "".join(codes) + text + _RESET

    def send(self, notification: Notification) -> None:
        result = notification.result
        kind = notification.kind

        if kind is NotificationKind.STATUS_CHANGE:
            self._stream.write(self.format_status_change(notification))
            self._stream.flush()
            logger.warning(
                "Status change for %s: %s -> %s",
                result.url,
                notification.previous_status.value if notification.previous_status else "?",
                result.status.value,
            )
        elif kind is NotificationKind.SUPPRESSED:
            logger.warning(
                "[RATE LIMITED] Status change for %s (%s -> %s) - next alert available in %ds",
                result.url,
                notification.previous_status.value if notification.previous_status else "?",
                result.status.value,
                math.ceil((notification.retry_after_ms or 0) / 1000),
            )
        elif kind is NotificationKind.INITIAL:
            logger.info("[INITIAL CHECK] %s - %s (%sms)", result.url, result.status.value, result.response_time_ms)
        else:
            logger.info(
                "[%s] %s - %s (%sms)",
                result.checked_at.strftime("%H:%M:%S"),
                result.url,
                result.status.value,
                result.response_time_ms,
            )

    def format_status_change(self, notification: Notification) -> str:
        """Build the multi-line banner shown for a status change."""
        result = notification.result
        color = _GREEN if result.status is Status.UP else _RED
        previous = notification.previous_status.value if notification.previous_status else "UNKNOWN"

        lines = [
            "",
            self._style(_RULE, color, _BOLD),
            self._style("WEBSITE STATUS CHANGE DETECTED", color, _BOLD),
            self._style(_RULE, color, _BOLD),
            "",
            f"Website:        {result.url}",
            f"Status:         {previous} -> {self._style(result.status.value, color, _BOLD)}",
            f"Response Time:  {result.response_time_ms}ms",
        ]
        if result.code is not None:
            lines.append(f"HTTP Status:    {result.code}")
        lines.append(f"Check Time:     {result.checked_at.isoformat()}")
        if result.error:
            lines.append(f"Error:          {result.error}")
        lines += ["", self._style(_RULE, color, _BOLD), ""]
        return "\n".join(lines) + "\n"


class WebhookSink(Sink):
    """Posts subscribed notifications as JSON, retrying with exponential backoff."""

    def __init__(self, config: WebhookConfig, max_retries: int = 3, retry_delay: float = 2) -> None:
        """Initialize the webhook sink.

        Args:
            config: Webhook URL and subscribed events.
            max_retries: Maximum number of retry attempts for a failed post.
            retry_delay: Base delay in seconds between retries (doubles each attempt).
        """
        self._config = config
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    @property
    def url(self) -> str:
        return self._config.url

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def wants(self, notification: Notification) -> bool:
        return self._config.enabled and notification.kind.value in self._config.events

    def send(self, notification: Notification) -> None:
        if not self.wants(notification):
            return
        self.post(notification.to_dict())

    def post(self, payload: dict) -> bool:
        """Post a payload, retrying on failure.

        Returns:
            True if the webhook accepted the payload.
        """
        retry_count = 0
        while retry_count <= self._max_retries:
            try:
                response = requests.post(self._config.url, json=payload, timeout=10)
                response.raise_for_status()
                logger.info("Webhook %s sent to %s", payload.get("event"), self._config.url)
                return True

            except requests.RequestException as e:
                retry_count += 1
                if retry_count <= self._max_retries:
                    delay = self._retry_delay * (2 ** (retry_count - 1))
                    logger.warning(
                        "Webhook failed for %s (attempt %d/%d, retrying in %ds): %s",
                        self._config.url,
                        retry_count,
                        self._max_retries + 1,
                        delay,
                        e,
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        "Webhook failed for %s after %d attempts: %s",
                        self._config.url,
                        retry_count,
                        e,
                    )
        return False


class Notifier:
    """Fans each notification out to every sink.

    A failing sink is logged and never stops delivery to the others or
    propagates back into the alert engine.
    """

    def __init__(self, sinks: Iterable[Sink]) -> None:
        self._sinks = list(sinks)

    @classmethod
    def from_config(cls, config: AlertsConfig, stream: TextIO | None = None) -> "Notifier":
        sinks: list[Sink] = [TerminalSink(stream)]
        sinks.extend(WebhookSink(webhook) for webhook in config.webhooks)
        return cls(sinks)

    @property
    def sinks(self) -> list[Sink]:
        return list(self._sinks)

    def notify(self, notification: Notification) -> None:
        for sink in self._sinks:
            try:
                sink.send(notification)
            except Exception as e:
                logger.error("Notification sink %s failed: %s", type(sink).__name__, e)

    def test_webhooks(self) -> dict[str, bool]:
        """Send a test payload to every configured webhook.

        Returns:
            Dictionary mapping webhook URLs to success status.
        """
        test_payload = {
            "event": "test",
            "priority": "low",
            "url": "https://example.com",
            "previousStatus": "UP",
            "newStatus": "UP",
            "code": 200,
            "responseTime": 100,
            "error": None,
            "checkedAt": datetime.now(UTC).isoformat(),
            "retryAfterMs": None,
        }
        results = {}
        for sink in self._sinks:
            if not isinstance(sink, WebhookSink):
                continue
            if not sink.enabled:
                results[sink.url] = False
                continue
            results[sink.url] = sink.post(test_payload)
        return results
