"""Notification outbox consumer."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from ..storage.db import ProbeStore
from ..storage.models import Notification, NotificationStatus


logger = structlog.get_logger(__name__)

# Returns True when the notification was handed off successfully.
Deliver = Callable[[Notification], Awaitable[bool]]

LOG_CHANNEL = "LOG"


async def log_delivery(notification: Notification) -> bool:
    """
    Default delivery. The LOG channel writes the notification to the service
    log. Any other channel has no transport here, so the attempt fails and the
    row stays undelivered until it runs out of retries.
    """
    if notification.channel != LOG_CHANNEL:
        logger.warning(
            "No transport for notification channel",
            notification_id=notification.id,
            channel=notification.channel,
        )
        return False
    logger.info(
        "Notification ready for delivery",
        notification_id=notification.id,
        channel=notification.channel,
        destination=notification.destination,
        message=notification.payload.get("message"),
    )
    return True


@dataclass(frozen=True)
class OutboxPassSummary:
    sent: int = 0
    retried: int = 0
    failed: int = 0


class OutboxProcessor:
    """Drains PENDING notifications in creation order, tracking retries per row."""

    def __init__(
        self,
        store: ProbeStore,
        *,
        deliver: Deliver = log_delivery,
        batch_size: int = 10,
        max_retries: int = 3,
    ):
        self.store = store
        self.deliver = deliver
        self.batch_size = max(1, int(batch_size))
        self.max_retries = max(1, int(max_retries))

    async def process_pending(self) -> OutboxPassSummary:
        pending = await asyncio.to_thread(
            self.store.list_pending_notifications, limit=self.batch_size, max_retries=self.max_retries
        )
        sent = retried = failed = 0
        for notification in pending:
            try:
                ok = bool(await self.deliver(notification))
                error = None if ok else "Failed to send notification"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Error sending notification",
                    notification_id=notification.id,
                    channel=notification.channel,
                    error=str(e),
                )
                ok = False
                error = f"{type(e).__name__}: {e}"

            if ok:
                await asyncio.to_thread(self.store.mark_notification_sent, notification.id)
                sent += 1
                continue

            status = await asyncio.to_thread(
                self.store.record_notification_failure,
                notification.id,
                error_message=error or "",
                max_retries=self.max_retries,
            )
            if status == NotificationStatus.FAILED:
                failed += 1
                logger.warning("Notification failed permanently", notification_id=notification.id)
            else:
                retried += 1

        if pending:
            logger.info("Processed notification outbox", sent=sent, retried=retried, failed=failed)
        return OutboxPassSummary(sent=sent, retried=retried, failed=failed)

    async def run_pass(self) -> None:
        """Scheduler entry point: one pass, never raises."""
        try:
            await self.process_pending()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error processing notifications", error=str(e))
