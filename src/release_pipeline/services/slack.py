"""Slack incoming-webhook notifier.

Posts one message per Notification. The payload follows the layout the
release workflow used to produce: a headline with an optional mention, a
custom sender name and icon, and one attachment coloured by status.

Delivery is single-shot: no retries. Callers decide whether a NotifyError
matters; the pipeline hooks log it and move on.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from release_pipeline.errors import NotifyError
from release_pipeline.logging_config import get_logger
from release_pipeline.schemas import JobStatus, Notification

logger = get_logger(__name__)

STATUS_COLORS: dict[JobStatus, str] = {
    JobStatus.SUCCESS: "good",
    JobStatus.FAILURE: "danger",
    JobStatus.CANCELLED: "warning",
}

SPECIAL_MENTIONS: dict[str, str] = {
    "channel": "<!channel>",
    "here": "<!here>",
    "everyone": "<!everyone>",
}


def format_mention(mention: str) -> str:
    """Turn a mention setting into Slack markup."""
    if mention in SPECIAL_MENTIONS:
        return SPECIAL_MENTIONS[mention]
    return f"<@{mention.lstrip('@')}>"


def should_mention(notification: Notification) -> bool:
    if not notification.mention:
        return False
    return notification.mention_if in ("always", notification.status.value)


def build_payload(notification: Notification) -> dict[str, Any]:
    """Render a Notification as a Slack webhook payload."""
    text = notification.title
    if should_mention(notification):
        text = f"{format_mention(notification.mention or '')} {text}"

    fields = [{"title": "Status", "value": notification.status.value, "short": True}]
    fields += [
        {"title": key, "value": value, "short": True}
        for key, value in notification.fields.items()
    ]

    payload: dict[str, Any] = {
        "text": text,
        "username": notification.username,
        "attachments": [
            {
                "color": STATUS_COLORS[notification.status],
                "fallback": f"{notification.title}: {notification.status.value}",
                "fields": fields,
            }
        ],
    }
    if notification.icon_emoji:
        payload["icon_emoji"] = f":{notification.icon_emoji.strip(':')}:"
    return payload


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class NotifierProtocol(Protocol):
    """Interface for notification transports."""

    async def send(self, notification: Notification) -> None:
        """Deliver one notification.

        Raises:
            NotifyError: If the message could not be delivered
        """
        ...


# ---------------------------------------------------------------------------
# Slack Implementation
# ---------------------------------------------------------------------------


class SlackNotifier:
    """Posts notifications to a Slack incoming webhook.

    Usage:
        notifier = SlackNotifier(webhook_url=os.environ["SLACK_WEBHOOK"])
        await notifier.send(notification)
    """

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._transport = transport

    async def send(self, notification: Notification) -> None:
        try:
            payload = build_payload(notification)
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(self._webhook_url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NotifyError(
                f"Slack webhook returned {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise NotifyError(f"Slack webhook request failed: {exc}") from exc
        except (httpx.InvalidURL, KeyError, ValueError) as exc:
            # Malformed SLACK_WEBHOOK, or a status without a colour
            raise NotifyError(f"Cannot send Slack notification: {exc}") from exc

        logger.info(
            "notification_sent",
            username=notification.username,
            status=notification.status.value,
        )


# ---------------------------------------------------------------------------
# Log-only and Mock Implementations
# ---------------------------------------------------------------------------


class LogNotifier:
    """Writes notifications to the log. Used when no webhook is configured."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "notification_logged",
            username=notification.username,
            title=notification.title,
            status=notification.status.value,
            mention=notification.mention if should_mention(notification) else None,
        )


class MockNotifier:
    """Records notifications instead of sending them.

    Usage:
        notifier = MockNotifier()
        ...
        assert notifier.sent[0].status == JobStatus.FAILURE
    """

    def __init__(self, fail: bool = False) -> None:
        """Initialize the recorder.

        Args:
            fail: Raise NotifyError on every send (after recording the attempt)
        """
        self._fail = fail
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        if self._fail:
            raise NotifyError("mock notifier is configured to fail")
