from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .config import NotificationConfig
from .formatters import format_html, format_subject, format_test_message, format_text
from .models import ClassifiedAlert

log = logging.getLogger("dispatcher")


class NotificationDispatcher:
    """FIFO email delivery, one alert at a time with a fixed pause between sends.

    ``deliver`` never blocks the caller; a single background task drains the
    queue. Failed sends are logged and dropped.
    """

    def __init__(
        self,
        sender: Optional[Any],
        recipients: List[str],
        cfg: Optional[NotificationConfig] = None,
        *,
        app_name: str = "Opportunity Monitor",
    ):
        cfg = cfg or NotificationConfig()
        self.sender = sender
        self.recipients = [r.strip() for r in (recipients or []) if r and r.strip()]
        self.delay_s = float(cfg.delay_s)
        self.queue_size = int(cfg.queue_size)
        self.app_name = app_name

        self._queue: Optional[asyncio.Queue] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._closed = False
        self.processing = False
        self.sent = 0
        self.failed = 0

    def enabled(self) -> bool:
        return self.sender is not None and bool(self.recipients)

    def _get_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.queue_size)
        return self._queue

    def deliver(self, alert: ClassifiedAlert) -> bool:
        if self._closed:
            log.warning("dispatcher_closed dropped=%s", alert.opportunity_id)
            return False
        try:
            self._get_queue().put_nowait(alert)
        except asyncio.QueueFull:
            log.warning("notification_queue_full size=%d dropped=%s", self.queue_size, alert.opportunity_id)
            return False
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())
        return True

    async def _drain(self) -> None:
        queue = self._get_queue()
        while not queue.empty():
            alert = queue.get_nowait()
            self.processing = True
            try:
                await self.send_now(alert)
            except Exception as e:
                self.failed += 1
                log.exception("notification_failed opportunity=%s err=%s", alert.opportunity_id, e)
            finally:
                queue.task_done()
            try:
                # pause after every send, the last one included
                if self.delay_s > 0:
                    await asyncio.sleep(self.delay_s)
            finally:
                self.processing = False

    async def send_now(self, alert: ClassifiedAlert) -> bool:
        if not self.enabled():
            log.info("notification_skipped reason=email_disabled %s", format_text(alert))
            return False

        subject = format_subject(alert)
        body = format_html(alert)
        ok = True
        for to in self.recipients:
            if await self.sender.send(to, subject, body):
                self.sent += 1
            else:
                self.failed += 1
                ok = False
        log.info("notification_sent ok=%s recipients=%d %s", ok, len(self.recipients), format_text(alert))
        return ok

    async def send_test_message(self) -> bool:
        if not self.enabled():
            log.warning("test_notification_skipped reason=email_disabled")
            return False
        subject = f"{self.app_name}: test notification"
        body = format_test_message(self.app_name)
        results = [await self.sender.send(to, subject, body) for to in self.recipients]
        return all(results)

    async def test_connectivity(self) -> bool:
        if self.sender is None:
            return False
        return await self.sender.check()

    def queue_status(self) -> Dict[str, Any]:
        return {
            "pending": self._queue.qsize() if self._queue is not None else 0,
            "processing": self.processing,
            "sent": self.sent,
            "failed": self.failed,
        }

    async def close(self, timeout: float = 30.0) -> None:
        self._closed = True
        task = self._drain_task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            pending = self._queue.qsize() if self._queue is not None else 0
            log.warning("notification_drain_timeout dropped=%d", pending)
            task.cancel()
