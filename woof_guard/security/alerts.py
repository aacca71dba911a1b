"""Alert delivery to an external capture channel.

Delivery is fire-and-forget: ``AlertDispatcher.dispatch`` never blocks the
request path on the channel and never raises, whether or not the caller is
running inside an event loop. Channel failures are logged locally at WARNING.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from woof_guard.security.redaction import sanitize_object

logger = logging.getLogger(__name__)

_MAX_RETRIES = 3
_BACKOFF_CAP_SECONDS = 30


class AlertDeliveryError(Exception):
    """Raised by a sink when the channel did not accept an alert."""


@dataclass(frozen=True)
class Alert:
    text: str
    level: str = "warning"
    context: dict[str, Any] = field(default_factory=dict)


class AlertSink(ABC):
    """External error-tracking channel."""

    @abstractmethod
    async def capture_message(self, text: str, level: str, context: dict[str, Any]) -> None:
        """Deliver one alert message."""


class LoggingAlertSink(AlertSink):
    """Sink that writes alerts to the ``woof_guard.alerts`` logger."""

    def __init__(self) -> None:
        self._logger = logging.getLogger("woof_guard.alerts")

    async def capture_message(self, text: str, level: str, context: dict[str, Any]) -> None:
        log_level = logging.ERROR if level in ("error", "fatal") else logging.WARNING
        self._logger.log(log_level, text, extra={"data": context})


class WebhookAlertSink(AlertSink):
    """Posts alerts as JSON to an HTTP capture endpoint.

    Retries on 429/5xx with exponential backoff capped at 30s.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def capture_message(self, text: str, level: str, context: dict[str, Any]) -> None:
        payload = {"message": text, "level": level, "context": context}
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport, verify=True,
        ) as client:
            for attempt in range(_MAX_RETRIES + 1):
                resp = await client.post(self._url, json=payload)
                if resp.status_code < 400:
                    return
                if not self._should_retry(resp.status_code) or attempt == _MAX_RETRIES:
                    raise AlertDeliveryError(
                        f"Alert endpoint answered {resp.status_code}",
                    )
                await asyncio.sleep(min(2 ** attempt, _BACKOFF_CAP_SECONDS))

    @staticmethod
    def _should_retry(status_code: int) -> bool:
        return status_code == 429 or status_code >= 500


class AlertDispatcher:
    """Hands alerts to a sink without making the caller wait.

    With ``start()`` called inside an event loop, alerts go onto a bounded
    queue drained by a background task. Without a worker, alerts are
    scheduled as tasks on the running loop. Callers with no running loop
    (threadpool workers, synchronous code) hand alerts to a daemon thread
    that runs its own loop. ``inline=True`` delivers on the caller's thread
    instead, for one-shot command line use.
    """

    def __init__(self, sink: AlertSink, max_queue: int = 1000, inline: bool = False) -> None:
        self.sink = sink
        self._max_queue = max_queue
        self._inline = inline
        self._queue: asyncio.Queue[Alert] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[None]] = set()
        self._background: asyncio.AbstractEventLoop | None = None
        self._background_lock = threading.Lock()
        self._futures: set[concurrent.futures.Future[None]] = set()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def dispatch(self, alert: Alert) -> None:
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if self.running and self._loop is not None:
            if loop is self._loop:
                self._enqueue(alert)
            else:
                self._loop.call_soon_threadsafe(self._enqueue, alert)
            return

        if loop is not None:
            task = loop.create_task(self._deliver(alert))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return

        if self._inline:
            asyncio.run(self._deliver(alert))
            return

        future = asyncio.run_coroutine_threadsafe(self._deliver(alert), self._background_loop())
        self._futures.add(future)
        future.add_done_callback(self._futures.discard)

    def _enqueue(self, alert: Alert) -> None:
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(alert)
        except asyncio.QueueFull:
            logger.warning("Alert queue full, dropping alert: %s", alert.text)

    def _background_loop(self) -> asyncio.AbstractEventLoop:
        with self._background_lock:
            if self._background is None:
                loop = asyncio.new_event_loop()
                threading.Thread(
                    target=loop.run_forever, name="alert-dispatcher", daemon=True,
                ).start()
                self._background = loop
            return self._background

    async def _deliver(self, alert: Alert) -> None:
        context = sanitize_object(alert.context)
        try:
            await self.sink.capture_message(alert.text, alert.level, context)  # type: ignore[arg-type]
        except Exception as exc:  # alert channel failures must never reach the caller
            logger.warning("Failed to deliver alert to external channel: %s", exc)

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            alert = await self._queue.get()
            try:
                await self._deliver(alert)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._max_queue)
        self._worker = self._loop.create_task(self._run())

    def flush(self, timeout: float | None = None) -> None:
        """Block until alerts handed to the daemon thread have been delivered."""
        concurrent.futures.wait(list(self._futures), timeout=timeout)

    async def drain(self) -> None:
        """Wait until every alert handed over so far has been delivered."""
        if self._queue is not None and self.running:
            await self._queue.join()
        if self._pending:
            await asyncio.gather(*list(self._pending))
        if self._futures:
            await asyncio.gather(*(asyncio.wrap_future(f) for f in list(self._futures)))

    async def stop(self) -> None:
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None
        self._loop = None
        with self._background_lock:
            if self._background is not None:
                self._background.call_soon_threadsafe(self._background.stop)
                self._background = None


def build_sink(webhook_url: str | None) -> AlertSink:
    if webhook_url:
        return WebhookAlertSink(webhook_url)
    return LoggingAlertSink()
