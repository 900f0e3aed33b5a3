"""Tests for transition notifications."""

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from relctl.config import NotificationConfig, WebhookConfig
from relctl.release import notify
from relctl.release.models import EventKind, ReleaseEvent, ReleaseStatus
from relctl.release.notify import Notifier, WebhookNotifier, build_payload


def transition(to_state: ReleaseStatus = ReleaseStatus.PROMOTED) -> ReleaseEvent:
    return ReleaseEvent(
        release_id="r1",
        target_id="web",
        kind=EventKind.TRANSITION,
        from_state=ReleaseStatus.HEALTH_CHECKING,
        to_state=to_state,
        reason="health check passed",
    )


@pytest.fixture
def webhook_server():
    """Route webhook POSTs to a scripted list of status codes."""

    class Server:
        def __init__(self):
            self.statuses: list[int] = []
            self.requests: list[httpx.Request] = []

        def handler(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            status = self.statuses.pop(0) if self.statuses else 200
            return httpx.Response(status)

    server = Server()
    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(server.handler), **kwargs)

    with patch.object(notify.httpx, "AsyncClient", side_effect=client_factory):
        yield server


class TestPayload:
    """Tests for build_payload."""

    def test_fields(self):
        payload = build_payload(transition())
        assert payload["event_type"] == "release.transition"
        assert payload["from_state"] == "health_checking"
        assert payload["to_state"] == "promoted"
        assert payload["reason"] == "health check passed"


class TestWebhookNotifier:
    """Tests for WebhookNotifier."""

    def test_event_filter(self):
        notifier = WebhookNotifier(WebhookConfig(url="https://hooks.test", events=["failed"]))
        assert notifier.should_notify(transition(ReleaseStatus.FAILED))
        assert not notifier.should_notify(transition(ReleaseStatus.PROMOTED))

    def test_markers_not_sent(self):
        notifier = WebhookNotifier(WebhookConfig(url="https://hooks.test"))
        marker = ReleaseEvent(
            release_id="r1",
            target_id="web",
            kind=EventKind.MARKER,
            marker="activation_started",
        )
        assert not notifier.should_notify(marker)

    @pytest.mark.asyncio
    async def test_delivers_payload(self, webhook_server, fake_clock):
        config = WebhookConfig(url="https://hooks.test", headers={"X-Token": "s3cret"})
        result = await WebhookNotifier(config, sleep=fake_clock.sleep).notify(transition())

        assert result.success
        request = webhook_server.requests[0]
        assert request.headers["X-Token"] == "s3cret"
        assert json.loads(request.content)["release_id"] == "r1"

    @pytest.mark.asyncio
    async def test_server_errors_retried(self, webhook_server, fake_clock):
        webhook_server.statuses = [502, 503, 200]
        config = WebhookConfig(url="https://hooks.test", retry_count=3)

        result = await WebhookNotifier(config, sleep=fake_clock.sleep).notify(transition())

        assert result.success
        assert result.attempts == 3
        assert fake_clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, webhook_server, fake_clock):
        webhook_server.statuses = [500, 500]
        config = WebhookConfig(url="https://hooks.test", retry_count=1)

        result = await WebhookNotifier(config, sleep=fake_clock.sleep).notify(transition())

        assert not result.success
        assert result.attempts == 2
        assert result.status_code == 500

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, webhook_server, fake_clock):
        webhook_server.statuses = [404]
        config = WebhookConfig(url="https://hooks.test", retry_count=3)

        result = await WebhookNotifier(config, sleep=fake_clock.sleep).notify(transition())

        assert not result.success
        assert result.attempts == 1
        assert fake_clock.sleeps == []


class TestNotifier:
    """Tests for Notifier fan-out."""

    @pytest.mark.asyncio
    async def test_sink_failure_swallowed(self):
        received = []

        async def broken(event):
            raise RuntimeError("sink down")

        async def recorder(event):
            received.append(event)

        notifier = Notifier(sinks=[broken, recorder])
        await notifier.publish(transition())
        await notifier.close()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_from_config(self, webhook_server, fake_clock):
        config = NotificationConfig(
            webhooks=[
                {"url": "https://a.test", "events": ["promoted"]},
                {"url": "https://b.test", "events": ["failed"]},
            ]
        )
        notifier = Notifier.from_config(config, sleep=fake_clock.sleep)

        await notifier.publish(transition(ReleaseStatus.PROMOTED))
        await notifier.close()

        assert [r.url.host for r in webhook_server.requests] == ["a.test"]

    @pytest.mark.asyncio
    async def test_publish_does_not_wait_for_delivery(self):
        unblock = asyncio.Event()
        received = []

        async def slow(event):
            await unblock.wait()
            received.append(event)

        notifier = Notifier(sinks=[slow])
        await asyncio.wait_for(notifier.publish(transition(ReleaseStatus.STAGED)), 1)
        await asyncio.wait_for(notifier.publish(transition(ReleaseStatus.PROMOTED)), 1)
        assert received == []

        unblock.set()
        await notifier.close()

        assert [e.to_state for e in received] == [ReleaseStatus.STAGED, ReleaseStatus.PROMOTED]
        assert notifier.pending == 0

    @pytest.mark.asyncio
    async def test_close_gives_up_after_drain_timeout(self):
        async def stuck(event):
            await asyncio.Event().wait()

        notifier = Notifier(sinks=[stuck], drain_timeout=0.01)
        await notifier.publish(transition())
        await notifier.publish(transition())

        await asyncio.wait_for(notifier.close(), 1)

    @pytest.mark.asyncio
    async def test_nothing_queued_without_interested_sinks(self):
        notifier = Notifier(
            webhooks=[WebhookNotifier(WebhookConfig(url="https://hooks.test", events=["failed"]))]
        )
        await notifier.publish(transition(ReleaseStatus.PROMOTED))
        assert notifier.pending == 0
        await notifier.close()
