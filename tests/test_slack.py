"""Tests for Slack payloads and notifier delivery.

Run with: pytest tests/test_slack.py -v
"""

from __future__ import annotations

import json

import httpx
import pytest

from release_pipeline.errors import NotifyError
from release_pipeline.schemas import JobStatus, Notification
from release_pipeline.services.slack import (
    LogNotifier,
    MockNotifier,
    SlackNotifier,
    build_payload,
    format_mention,
)

WEBHOOK = "https://hooks.slack.com/services/T000/B000/XXXX"


def _notification(**overrides) -> Notification:
    values = {
        "status": JobStatus.FAILURE,
        "username": "GitHub Actions (Failure)",
        "title": ":diamant-bus: Release refs/tags/v1.0.0 (ubuntu-latest x86_64-unknown-linux-gnu)",
        "mention": "channel",
        "icon_emoji": "github",
        "fields": {"Asset": "diamant-x86_64-unknown-linux-gnu"},
    }
    values.update(overrides)
    return Notification(**values)


# ---------------------------------------------------------------------------
# Payload rendering
# ---------------------------------------------------------------------------


class TestBuildPayload:
    def test_failure_payload(self) -> None:
        payload = build_payload(_notification())

        assert payload["text"].startswith("<!channel> :diamant-bus: Release")
        assert payload["username"] == "GitHub Actions (Failure)"
        assert payload["icon_emoji"] == ":github:"
        attachment = payload["attachments"][0]
        assert attachment["color"] == "danger"
        assert {"title": "Status", "value": "failure", "short": True} in attachment["fields"]
        assert {
            "title": "Asset",
            "value": "diamant-x86_64-unknown-linux-gnu",
            "short": True,
        } in attachment["fields"]

    @pytest.mark.parametrize(
        ("status", "color"),
        [
            (JobStatus.SUCCESS, "good"),
            (JobStatus.FAILURE, "danger"),
            (JobStatus.CANCELLED, "warning"),
        ],
    )
    def test_color_follows_status(self, status: JobStatus, color: str) -> None:
        payload = build_payload(_notification(status=status))
        assert payload["attachments"][0]["color"] == color

    def test_no_mention(self) -> None:
        payload = build_payload(_notification(mention=None))
        assert payload["text"].startswith(":diamant-bus:")

    def test_mention_only_on_matching_status(self) -> None:
        quiet = build_payload(_notification(status=JobStatus.SUCCESS, mention_if="failure"))
        loud = build_payload(_notification(status=JobStatus.FAILURE, mention_if="failure"))
        assert "<!channel>" not in quiet["text"]
        assert loud["text"].startswith("<!channel>")

    def test_icon_already_wrapped(self) -> None:
        assert build_payload(_notification(icon_emoji=":rocket:"))["icon_emoji"] == ":rocket:"

    def test_no_icon(self) -> None:
        assert "icon_emoji" not in build_payload(_notification(icon_emoji=None))

    def test_user_mention(self) -> None:
        assert format_mention("@U024BE7LH") == "<@U024BE7LH>"
        assert format_mention("here") == "<!here>"


# ---------------------------------------------------------------------------
# SlackNotifier
# ---------------------------------------------------------------------------


class TestSlackNotifier:
    @pytest.mark.asyncio
    async def test_posts_payload_to_webhook(self) -> None:
        received: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200, text="ok")

        notifier = SlackNotifier(WEBHOOK, transport=httpx.MockTransport(handler))
        await notifier.send(_notification())

        assert len(received) == 1
        assert str(received[0].url) == WEBHOOK
        body = json.loads(received[0].read())
        assert body["username"] == "GitHub Actions (Failure)"

    @pytest.mark.asyncio
    async def test_error_status_raises(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(404, text="no_service"))
        notifier = SlackNotifier(WEBHOOK, transport=transport)

        with pytest.raises(NotifyError, match="404"):
            await notifier.send(_notification())

    @pytest.mark.asyncio
    async def test_connection_error_raises(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        notifier = SlackNotifier(WEBHOOK, transport=httpx.MockTransport(refuse))

        with pytest.raises(NotifyError, match="request failed"):
            await notifier.send(_notification())

    @pytest.mark.asyncio
    async def test_malformed_webhook_url_raises_notify_error(self) -> None:
        notifier = SlackNotifier("https://hooks.slack.com:notaport/services/T/B/X")

        with pytest.raises(NotifyError):
            await notifier.send(_notification())


# ---------------------------------------------------------------------------
# LogNotifier / MockNotifier
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_log_notifier_never_raises() -> None:
    await LogNotifier().send(_notification())


@pytest.mark.asyncio
async def test_mock_notifier_records_before_failing() -> None:
    notifier = MockNotifier(fail=True)
    with pytest.raises(NotifyError):
        await notifier.send(_notification())
    assert len(notifier.sent) == 1
