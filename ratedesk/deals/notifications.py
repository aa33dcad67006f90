"""
Deal lifecycle notifications.

``NotificationService.notify`` hands an event to every configured channel
in a background task and returns immediately. Delivery failures are logged
and counted, never raised to the deal workflow.
"""

import asyncio
from enum import Enum
from typing import Any, Optional

import aiohttp
import structlog
from prometheus_client import Counter

from ..common.errors import NotificationUnavailable
from ..common.models import Deal, DealExecutionResult
from ..common.provider_base import NotificationChannel

notifications_failed_total = Counter(
    "ratedesk_notifications_failed_total",
    "Notification deliveries that failed",
    ["channel", "event"],
)


class DealEvent(str, Enum):
    DEAL_CREATED = "DEAL_CREATED"
    DEAL_EXECUTED = "DEAL_EXECUTED"
    DEAL_CANCELLED = "DEAL_CANCELLED"


class LoggingNotificationChannel(NotificationChannel):
    """Writes notifications to the structured log."""

    name = "log"

    def __init__(self):
        self.logger = structlog.get_logger("ratedesk.notifications")

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        self.logger.info("Deal notification", notification=event, **payload)


class WebhookNotificationChannel(NotificationChannel):
    """
    Posts notifications as JSON to an HTTP endpoint.

    The body is ``{"event": ..., "payload": ...}`` with decimals already
    rendered as strings by the caller.
    """

    name = "webhook"

    def __init__(self, url: str, timeout_seconds: int = 10):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)

        body = {"event": event, "payload": payload}
        try:
            async with self.session.post(self.url, json=body) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise NotificationUnavailable(
                        f"Webhook rejected notification: {response.status} - {error_text}",
                        {"status": response.status, "event": event},
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NotificationUnavailable(
                f"Webhook delivery failed: {e}", {"event": event}
            ) from e

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None


class NotificationService:
    """Fans deal events out to channels without blocking the caller."""

    def __init__(self, channels: Optional[list[NotificationChannel]] = None):
        self.channels = channels if channels is not None else [LoggingNotificationChannel()]
        self.logger = structlog.get_logger("ratedesk.notifications")
        self._pending: set[asyncio.Task] = set()

    def notify(self, event: DealEvent, payload: dict[str, Any]) -> asyncio.Task:
        """Schedule delivery of an event to all channels and return the task."""
        task = asyncio.create_task(self._deliver(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def deal_created(self, deal: Deal) -> asyncio.Task:
        return self.notify(DealEvent.DEAL_CREATED, {"deal": deal.model_dump(mode="json")})

    def deal_executed(self, deal: Deal, result: DealExecutionResult) -> asyncio.Task:
        return self.notify(
            DealEvent.DEAL_EXECUTED,
            {
                "deal": deal.model_dump(mode="json"),
                "result": result.model_dump(mode="json"),
            },
        )

    def deal_cancelled(self, deal: Deal, reason: Optional[str] = None) -> asyncio.Task:
        return self.notify(
            DealEvent.DEAL_CANCELLED,
            {"deal": deal.model_dump(mode="json"), "reason": reason},
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def close(self) -> None:
        await self.drain()
        for channel in self.channels:
            await channel.close()

    async def _deliver(self, event: DealEvent, payload: dict[str, Any]) -> None:
        for channel in self.channels:
            try:
                await channel.send(event.value, payload)
            except Exception as e:
                notifications_failed_total.labels(
                    channel=channel.name, event=event.value
                ).inc()
                self.logger.error(
                    "Notification delivery failed",
                    channel=channel.name,
                    notification=event.value,
                    error=str(e),
                )
