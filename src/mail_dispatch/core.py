# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dispatch queue: the worker loop tying scheduler, rate limiter and retries together.

:class:`DispatchQueue` owns every queued message. Callers hand it payloads via
:meth:`~DispatchQueue.enqueue` / :meth:`~DispatchQueue.enqueue_bulk` and get
back opaque ids; a single background task attempts delivery one message at a
time:

1. ask the scheduler for the next eligible message (none: go idle);
2. ask the rate limiter for a slot (none: sleep until the window resets);
3. reserve the message and call the delivery transport;
4. on success record the send and drop the message;
5. on failure either schedule a retry or drop the message as permanently
   failed, publishing a :class:`~mail_dispatch.models.DispatchEvent` either way;
6. pause ``send_interval`` seconds before the next message.

Enqueue, snapshot and listing are synchronous and safe to call from the event
loop or from worker threads; one ``threading.Lock`` guards the scheduler and
the rate limiter so they are never observed half-updated.

Example:
    Running the queue::

        from mail_dispatch.core import DispatchQueue
        from mail_dispatch.transport import SMTPTransport

        queue = DispatchQueue(SMTPTransport("smtp.example.com", 587), rate_limit_per_minute=50)
        await queue.start()
        msg_id = queue.enqueue(
            {"to": ["ada@example.com"], "subject": "Meeting summary", "text": "..."},
            {"priority": "high"},
        )
        ...
        await queue.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import threading
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from enum import Enum
from typing import Any

from .exceptions import PayloadValidationError
from .logger import get_logger
from .models import (
    DispatchEvent,
    DispatchStatus,
    EnqueueOptions,
    MessagePayload,
    MessageState,
    PendingMessageView,
    QueuedMessage,
    QueueSnapshot,
    epoch_to_datetime,
    new_message_id,
    parse_options,
    parse_payload,
)
from .prometheus import QueueMetrics
from .rate_limit import RateLimiter
from .retry import RetryPolicy, classify_error
from .scheduler import PriorityScheduler
from .transport import DeliveryResult, DeliveryTransport

DEFAULT_RATE_LIMIT_PER_MINUTE = 50
DEFAULT_SEND_INTERVAL = 0.1
DEFAULT_MAX_ENQUEUE_BATCH = 1000
DEFAULT_EVENT_QUEUE_SIZE = 1000
ERROR_BACKOFF_SECONDS = 1.0

FailureCallback = Callable[[DispatchEvent], Awaitable[None] | None]
BulkItem = tuple[Any, Any] | Mapping[str, Any]


class QueueState(str, Enum):
    """State of the worker loop."""

    IDLE = "idle"
    DRAINING = "draining"


def _summarise_addresses(values: Iterable[str]) -> str:
    preview = ", ".join(item for item in values if item)
    if len(preview) > 200:
        return f"{preview[:197]}..."
    return preview or "-"


class DispatchQueue:
    """Priority, rate-limited, retrying queue of outbound emails.

    Attributes:
        transport: Delivery transport called once per attempt.
        scheduler: Ordered collection of held messages.
        rate_limiter: Fixed-window limiter of successful sends.
        retry_policy: Retry decision and delay.
        metrics: Prometheus metrics.
        logger: Logger used for lifecycle and delivery messages.
    """

    def __init__(
        self,
        transport: DeliveryTransport,
        *,
        rate_limit_per_minute: int = DEFAULT_RATE_LIMIT_PER_MINUTE,
        retry_policy: RetryPolicy | None = None,
        send_interval: float = DEFAULT_SEND_INTERVAL,
        max_enqueue_batch: int = DEFAULT_MAX_ENQUEUE_BATCH,
        event_queue_size: int = DEFAULT_EVENT_QUEUE_SIZE,
        failure_callback: FailureCallback | None = None,
        clock: Callable[[], float] = time.time,
        metrics: QueueMetrics | None = None,
        logger: logging.Logger | None = None,
        log_delivery_activity: bool = False,
    ):
        self.transport = transport
        self.logger = logger or get_logger(__name__)
        self.metrics = metrics or QueueMetrics()
        self.retry_policy = retry_policy or RetryPolicy()
        self.scheduler = PriorityScheduler()
        self.rate_limiter = RateLimiter(rate_limit_per_minute)
        self._clock = clock
        self._send_interval = max(0.0, float(send_interval))
        self._max_enqueue_batch = max(1, int(max_enqueue_batch))
        self._failure_callback = failure_callback
        self._log_delivery_activity = bool(log_delivery_activity)

        self._lock = threading.Lock()
        self._state = QueueState.IDLE
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._events: asyncio.Queue[DispatchEvent] = asyncio.Queue(maxsize=max(1, int(event_queue_size)))
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None

        self._sent_total = 0
        self._failed_total = 0
        self._retried_total = 0

    # --------------------------------------------------------------- properties
    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------ enqueue
    def _build_message(
        self,
        payload: MessagePayload | dict[str, Any],
        options: EnqueueOptions | dict[str, Any] | None,
        now: float,
        index: int | None = None,
    ) -> QueuedMessage:
        parsed = parse_payload(payload, index=index)
        opts = parse_options(options, index=index)
        return QueuedMessage(
            id=new_message_id(),
            payload=parsed,
            priority=opts.priority,
            scheduled_at=opts.scheduled_epoch(now),
            max_attempts=opts.max_attempts or self.retry_policy.max_attempts,
            enqueued_at=now,
            metadata=dict(opts.metadata),
        )

    def enqueue(
        self,
        payload: MessagePayload | dict[str, Any],
        options: EnqueueOptions | dict[str, Any] | None = None,
    ) -> str:
        """Queue one message and return its id.

        Never waits for delivery. The worker is woken if it was idle.

        Raises:
            PayloadValidationError: If the payload or options are invalid; the
                message is not queued.
        """
        message = self._build_message(payload, options, self._clock())
        with self._lock:
            self.scheduler.insert(message)
            held = len(self.scheduler)
        self.metrics.set_pending(held)
        self.logger.debug(
            "Queued message %s (priority=%s, to=%s)",
            message.id,
            message.priority.value,
            _summarise_addresses(message.payload.to),
        )
        self._notify_worker()
        return message.id

    def enqueue_bulk(self, items: Iterable[BulkItem]) -> list[str]:
        """Queue several messages, preserving their order within each priority.

        Each item is either a ``(payload, options)`` pair or a mapping with
        ``payload`` and optional ``options`` keys. Every item is validated
        before any is queued, so an invalid item rejects the whole batch.

        Raises:
            PayloadValidationError: On the first invalid item (its index is
                reported) or when the batch exceeds ``max_enqueue_batch``.
        """
        items = list(items)
        if len(items) > self._max_enqueue_batch:
            raise PayloadValidationError(
                f"Cannot enqueue more than {self._max_enqueue_batch} messages at once"
            )
        now = self._clock()
        messages: list[QueuedMessage] = []
        for index, item in enumerate(items):
            if isinstance(item, Mapping):
                if "payload" not in item:
                    raise PayloadValidationError("missing 'payload'", index=index)
                payload, options = item["payload"], item.get("options")
            elif isinstance(item, (tuple, list)) and len(item) == 2:
                payload, options = item
            else:
                raise PayloadValidationError("expected (payload, options) pair", index=index)
            messages.append(self._build_message(payload, options, now, index=index))

        with self._lock:
            for message in messages:
                self.scheduler.insert(message)
            held = len(self.scheduler)
        self.metrics.set_pending(held)
        if messages:
            self.logger.info("Queued %d messages in bulk", len(messages))
            self._notify_worker()
        return [message.id for message in messages]

    # -------------------------------------------------------------- inspection
    def snapshot(self) -> QueueSnapshot:
        """Return the current status without blocking on delivery."""
        with self._lock:
            now = self._clock()
            return QueueSnapshot(
                queue_length=len(self.scheduler),
                processing=self._state is QueueState.DRAINING,
                sent_this_window=self.rate_limiter.sent_in_window(now),
                rate_limit_per_minute=self.rate_limiter.limit_per_minute,
                sent_total=self._sent_total,
                failed_total=self._failed_total,
                retried_total=self._retried_total,
                running=self.is_running,
            )

    def list_pending(self, limit: int | None = 10) -> list[PendingMessageView]:
        """Preview held messages: the in-flight one first, then scheduler order."""
        with self._lock:
            now = self._clock()
            views = [message.view(MessageState.IN_FLIGHT) for message in self.scheduler.in_flight()]
            for message in self.scheduler.pending():
                if limit is not None and len(views) >= limit:
                    break
                state = MessageState.ELIGIBLE if message.is_eligible(now) else MessageState.PENDING
                views.append(message.view(state))
        if limit is not None:
            return views[: max(0, limit)]
        return views

    def clear(self) -> int:
        """Drop every waiting message. The in-flight attempt is not affected."""
        with self._lock:
            removed = self.scheduler.clear()
            held = len(self.scheduler)
        self.metrics.set_pending(held)
        if removed:
            self.logger.warning("Cleared %d queued messages", removed)
        return removed

    async def results(self) -> AsyncIterator[DispatchEvent]:
        """Yield delivery events as the worker produces them."""
        while True:
            yield await self._events.get()

    async def drain(self, timeout: float | None = None, poll_interval: float = 0.05) -> bool:
        """Wait until the queue holds no message. Returns ``False`` on timeout."""
        try:
            async with asyncio.timeout(timeout):
                while True:
                    with self._lock:
                        if not len(self.scheduler):
                            return True
                    await asyncio.sleep(poll_interval)
        except asyncio.TimeoutError:
            return False

    # ---------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the background dispatch loop (no-op if already running)."""
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._stop.clear()
        self._task = asyncio.create_task(self._dispatch_loop(), name="mail-dispatch-loop")
        self.logger.info(
            "Dispatch queue started (rate_limit=%d/min, max_attempts=%d, retry_delay=%.1fs)",
            self.rate_limiter.limit_per_minute,
            self.retry_policy.max_attempts,
            self.retry_policy.retry_delay,
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop the loop, letting an in-flight attempt finish first.

        Messages not yet delivered stay in memory and remain inspectable.
        If ``timeout`` expires the loop is cancelled and the interrupted
        message is put back in the scheduler.
        """
        self._stop.set()
        self._wake_event.set()
        task = self._task
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Dispatch loop did not stop within %.1fs; cancelling", timeout)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self._requeue_in_flight()
        finally:
            self._task = None
            self._state = QueueState.IDLE
        self.logger.info("Dispatch queue stopped (%d messages held)", len(self.scheduler))

    def _requeue_in_flight(self) -> None:
        with self._lock:
            for message in self.scheduler.in_flight():
                self.scheduler.insert(message)

    def _notify_worker(self) -> None:
        """Wake the dispatch loop from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wake_event.set()
        else:
            loop.call_soon_threadsafe(self._wake_event.set)

    # ------------------------------------------------------------- worker loop
    async def _dispatch_loop(self) -> None:
        self.logger.debug("Dispatch loop started")
        while not self._stop.is_set():
            try:
                event = await self.process_next()
            except Exception as exc:
                self.logger.exception("Unhandled error in dispatch loop: %s", exc)
                await self._pause(ERROR_BACKOFF_SECONDS)
                continue
            if event is not None:
                self._state = QueueState.DRAINING
                await self._pause(self._send_interval)
                continue

            delay, rate_limited = self._plan_wait()
            if rate_limited:
                self._state = QueueState.DRAINING
                self.metrics.inc_rate_limited()
                self.logger.info(
                    "Rate limit reached (%d/min), waiting %.1fs",
                    self.rate_limiter.limit_per_minute,
                    delay,
                )
                await self._pause(delay)
                continue
            if delay == 0:
                await asyncio.sleep(0)
                continue
            if self._state is QueueState.DRAINING:
                self.logger.debug("No eligible messages, going idle")
            self._state = QueueState.IDLE
            await self._wait_for_wakeup(delay)
        self._state = QueueState.IDLE
        self.logger.debug("Dispatch loop exited")

    def _plan_wait(self) -> tuple[float | None, bool]:
        """Return ``(delay, rate_limited)`` for the loop's next wait.

        ``delay`` is ``None`` when nothing is scheduled at all, and ``0`` when
        a message became deliverable in the meantime.
        """
        with self._lock:
            now = self._clock()
            if self.scheduler.peek_eligible(now) is not None:
                if self.rate_limiter.can_send(now):
                    return 0.0, False
                return self.rate_limiter.time_until_available(now), True
            due = self.scheduler.next_due()
        if due is None:
            return None, False
        return max(0.0, due - now), False

    async def process_next(self) -> DispatchEvent | None:
        """Run one delivery attempt if a message is eligible and quota allows.

        Returns the resulting event, or ``None`` when nothing was attempted
        (nothing eligible, or the rate limit window is full).
        """
        with self._lock:
            now = self._clock()
            if self.scheduler.peek_eligible(now) is None:
                return None
            if not self.rate_limiter.can_send(now):
                return None
            message = self.scheduler.next_eligible(now)
            if message is None:
                return None
            self._state = QueueState.DRAINING
        result = await self._deliver(message)
        return await self._settle(message, result)

    async def _deliver(self, message: QueuedMessage) -> DeliveryResult:
        """Call the transport once for ``message``.

        Any exception raised by the transport is classified through
        :func:`~mail_dispatch.retry.classify_error` and turned into a failed
        result, so it never reaches the worker loop.

        Args:
            message: The reserved message to attempt.

        Returns:
            DeliveryResult: Outcome of the attempt.
        """
        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery for message %s to %s (attempt %d/%d)",
                message.id,
                _summarise_addresses(message.payload.to),
                message.attempts + 1,
                message.max_attempts,
            )
        try:
            outcome = self.transport.send(message.payload)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            is_temporary, code = classify_error(exc)
            reason = str(exc) or exc.__class__.__name__
            if code:
                reason = f"{reason} (code {code})"
            return DeliveryResult.failed(reason, permanent=not is_temporary)
        return self._coerce_result(outcome)

    @staticmethod
    def _coerce_result(outcome: Any) -> DeliveryResult:
        """Normalise a transport answer (result, mapping or bool) to ``DeliveryResult``."""
        if isinstance(outcome, DeliveryResult):
            return outcome
        if isinstance(outcome, Mapping):
            if outcome.get("success"):
                return DeliveryResult.ok(provider_id=outcome.get("id"))
            return DeliveryResult.failed(
                str(outcome.get("error") or "delivery failed"),
                permanent=bool(outcome.get("permanent", False)),
            )
        if isinstance(outcome, bool):
            return DeliveryResult.ok() if outcome else DeliveryResult.failed("delivery failed")
        return DeliveryResult.failed(f"unexpected transport result {outcome!r}")

    async def _settle(self, message: QueuedMessage, result: DeliveryResult) -> DispatchEvent:
        """Apply the outcome of an attempt to the queue state and publish it.

        Success records the send against the rate limiter and drops the
        message. A transient failure with attempts left schedules a retry at
        the end of the message's tier; anything else drops the message as
        permanently failed and triggers the failure callback.

        Args:
            message: The message that was just attempted.
            result: Outcome returned by :meth:`_deliver`.

        Returns:
            DispatchEvent: The event published to ``results()`` consumers.
        """
        deferred_until: float | None = None
        with self._lock:
            now = self._clock()
            message.attempts += 1
            if result.success:
                self.rate_limiter.record_success()
                self.scheduler.remove(message.id)
                self._sent_total += 1
                status = DispatchStatus.SENT
            else:
                message.last_error = result.error or "delivery failed"
                if not result.permanent and self.retry_policy.should_retry(message.attempts, message.max_attempts):
                    deferred_until = now + self.retry_policy.next_delay(message.attempts)
                    message.scheduled_at = deferred_until
                    self.scheduler.insert(message)
                    self._retried_total += 1
                    status = DispatchStatus.DEFERRED
                else:
                    self.scheduler.remove(message.id)
                    self._failed_total += 1
                    status = DispatchStatus.ERROR
            held = len(self.scheduler)

        event = DispatchEvent(
            id=message.id,
            status=status,
            attempts=message.attempts,
            timestamp=epoch_to_datetime(now),
            priority=message.priority,
            error=None if result.success else message.last_error,
            deferred_until=epoch_to_datetime(deferred_until) if deferred_until is not None else None,
            metadata=dict(message.metadata),
        )
        self.metrics.set_pending(held)
        self._record_outcome(message, event)
        self._publish(event)
        if status is DispatchStatus.ERROR:
            await self._notify_failure(event)
        return event

    def _record_outcome(self, message: QueuedMessage, event: DispatchEvent) -> None:
        """Update metrics and write the log line matching ``event.status``.

        Args:
            message: The attempted message.
            event: The event built by :meth:`_settle`.
        """
        priority = message.priority.value
        if event.status is DispatchStatus.SENT:
            self.metrics.inc_sent(priority)
            if self._log_delivery_activity:
                self.logger.info("Delivery succeeded for message %s (attempt %d)", message.id, message.attempts)
        elif event.status is DispatchStatus.DEFERRED:
            self.metrics.inc_deferred(priority)
            self.logger.warning(
                "Temporary error for message %s (attempt %d/%d): %s - retrying in %.1fs",
                message.id,
                message.attempts,
                message.max_attempts,
                message.last_error,
                message.scheduled_at - event.timestamp.timestamp(),
            )
        else:
            self.metrics.inc_error(priority)
            self.logger.error(
                "Message %s failed permanently after %d attempts: %s",
                message.id,
                message.attempts,
                message.last_error,
            )

    def _publish(self, event: DispatchEvent) -> None:
        """Hand an event to ``results()`` consumers, dropping the oldest if full."""
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            dropped = self._events.get_nowait()
            self.logger.warning("Event queue full; dropping event for message %s", dropped.id)
            self._events.put_nowait(event)

    async def _notify_failure(self, event: DispatchEvent) -> None:
        """Invoke the failure callback (sync or async); its errors are logged."""
        if self._failure_callback is None:
            return
        try:
            outcome = self._failure_callback(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            self.logger.exception("Failure callback raised for message %s", event.id)

    # ------------------------------------------------------------------ waiting
    async def _pause(self, delay: float | None) -> None:
        """Sleep ``delay`` seconds, returning early only when stopping.

        Used between attempts and while waiting for the rate window, so an
        enqueue does not cut it short.

        Args:
            delay: Seconds to wait; ``None`` or ``0`` just yields to the loop.
        """
        if self._stop.is_set():
            return
        if delay is None or delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(delay):
                await self._stop.wait()
        except asyncio.TimeoutError:
            return

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Idle until an enqueue wakes the loop, ``timeout`` elapses or stop."""
        if self._stop.is_set():
            return
        if timeout is not None and math.isinf(timeout):
            timeout = None
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
