"""
Best-effort operator notifications (webhook).
"""

from __future__ import annotations

from typing import Optional

import httpx

import core.config as config

STATUS_SENT = "sent"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


class Notifier:
    enabled = True

    def send(self, message: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class NullNotifier(Notifier):
    enabled = False

    def send(self, message: str) -> None:
        return None


class WebhookNotifier(Notifier):
    """Post ``{"text": message}`` to a Slack-compatible incoming webhook."""

    def __init__(self, url: str, timeout_seconds: float = 3.0):
        self._url = url
        self._client = httpx.Client(timeout=httpx.Timeout(timeout_seconds))

    def send(self, message: str) -> None:
        response = self._client.post(self._url, json={"text": message})
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


def build_notifier_from_config() -> Notifier:
    if config.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(config.NOTIFY_WEBHOOK_URL, config.NOTIFY_TIMEOUT_SECONDS)
    return NullNotifier()


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = build_notifier_from_config()
    return _notifier


def set_notifier(notifier: Optional[Notifier]) -> Optional[Notifier]:
    global _notifier
    previous = _notifier
    _notifier = notifier
    return previous


def close_notifier() -> None:
    global _notifier
    if _notifier is not None:
        _notifier.close()
        _notifier = None


def notify(message: str) -> str:
    """Send a notification; report the outcome instead of raising."""
    notifier = get_notifier()
    if not notifier.enabled:
        return STATUS_SKIPPED
    try:
        notifier.send(message)
    except Exception as exc:
        config.logger.warning("notification_failed", extra={"error": str(exc)})
        return STATUS_FAILED
    return STATUS_SENT
