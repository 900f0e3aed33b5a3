"""Release transition notifications."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from relctl.config import NotificationConfig, WebhookConfig
from relctl.core.async_utils import Sleep, retry_transport
from relctl.core.exceptions import TransportError
from relctl.core.logging import StructuredLogger
from relctl.release.models import EventKind, ReleaseEvent

logger = StructuredLogger(__name__)

EventSink = Callable[[ReleaseEvent], Awaitable[None]]


@dataclass
class WebhookResult:
    """Result of a webhook delivery."""

    url: str
    success: bool
    status_code: int | None = None
    attempts: int = 1
    error: str | None = None


def build_payload(event: ReleaseEvent) -> dict[str, Any]:
    """Build the outbound payload for a transition event."""
    return {
        "event_type": "release.transition",
        "release_id": event.release_id,
        "target_id": event.target_id,
        "from_state": event.from_state.value if event.from_state else None,
        "to_state": event.to_state.value if event.to_state else None,
        "timestamp": event.timestamp.isoformat(),
        "reason": event.reason,
        "details": event.details,
    }


class WebhookNotifier:
    """POST release transitions to a webhook endpoint.

    Server errors and connection failures are retried with exponential
    backoff; client errors are not.
    """

    def __init__(self, config: WebhookConfig, sleep: Sleep = asyncio.sleep):
        self.config = config
        self._sleep = sleep

    def should_notify(self, event: ReleaseEvent) -> bool:
        if event.kind != EventKind.TRANSITION or event.to_state is None:
            return False
        events = self.config.events
        return "*" in events or event.to_state.value in events

    async def notify(self, event: ReleaseEvent) -> WebhookResult:
        """Deliver one event."""
        url = self.config.url
        payload = build_payload(event)
        attempts = 0

        async def post() -> int:
            nonlocal attempts
            attempts += 1
            try:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                    response = await client.post(
                        url,
                        json=payload,
                        headers=self.config.headers,
                    )
            except httpx.RequestError as e:
                raise TransportError(f"Webhook request failed: {e}")

            if response.status_code >= 500:
                raise TransportError(
                    f"Webhook server error: {response.status_code}",
                    status_code=response.status_code,
                )
            return response.status_code

        try:
            status_code = await retry_transport(
                post,
                max_retries=self.config.retry_count,
                base_delay=1.0,
                sleep=self._sleep,
                label=f"webhook {url}",
            )
        except TransportError as e:
            return WebhookResult(
                url=url,
                success=False,
                status_code=e.status_code,
                attempts=attempts,
                error=e.message,
            )

        if status_code >= 400:
            logger.warning("Webhook rejected notification", url=url, status_code=status_code)
            return WebhookResult(
                url=url,
                success=False,
                status_code=status_code,
                attempts=attempts,
                error=f"Client error: {status_code}",
            )

        logger.debug("Webhook notification sent", url=url, attempts=attempts)
        return WebhookResult(url=url, success=True, status_code=status_code, attempts=attempts)


class Notifier:
    """Fan transition events out to every configured sink.

    ``publish`` only queues the event; a background worker delivers queued
    events in order, so a slow or unreachable sink never holds up a release.
    ``close`` flushes the queue. Delivery failures are logged and never
    propagate into the engine.
    """

    def __init__(
        self,
        webhooks: list[WebhookNotifier] | None = None,
        sinks: list[EventSink] | None = None,
        drain_timeout: float | None = None,
    ):
        self._webhooks = webhooks or []
        self._sinks = sinks or []
        self._drain_timeout = drain_timeout
        self._queue: asyncio.Queue[ReleaseEvent] | None = None
        self._worker: asyncio.Task | None = None

    @classmethod
    def from_config(cls, config: NotificationConfig, sleep: Sleep = asyncio.sleep) -> "Notifier":
        return cls(
            webhooks=[WebhookNotifier(w, sleep=sleep) for w in config.webhooks],
            drain_timeout=config.drain_timeout,
        )

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    @property
    def pending(self) -> int:
        """Events queued but not yet delivered."""
        return self._queue.qsize() if self._queue is not None else 0

    async def publish(self, event: ReleaseEvent) -> None:
        if not self._sinks and not any(w.should_notify(event) for w in self._webhooks):
            return

        if self._worker is None:
            self._queue = asyncio.Queue()
            self._worker = asyncio.create_task(self._run_worker())
        self._queue.put_nowait(event)

    async def _run_worker(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception as e:
                logger.warning(f"Notification delivery failed: {e}", release=event.release_id)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: ReleaseEvent) -> None:
        for sink in self._sinks:
            try:
                await sink(event)
            except Exception as e:
                logger.warning(f"Notification sink failed: {e}", release=event.release_id)

        targets = [w for w in self._webhooks if w.should_notify(event)]
        if not targets:
            return

        results = await asyncio.gather(*[w.notify(event) for w in targets])
        for result in results:
            if not result.success:
                logger.warning(
                    "Webhook notification failed",
                    url=result.url,
                    error=result.error,
                    release=event.release_id,
                )

    async def close(self) -> None:
        """Deliver queued events, then stop the worker."""
        if self._worker is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=self._drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Dropping {self.pending} undelivered notifications")

        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None
