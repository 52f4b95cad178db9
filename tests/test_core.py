import asyncio
import time
from concurrent.futures import ThreadPoolExecutor

import aiosmtplib
import pytest

from helpers import DummyTransport, make_payload
from mail_dispatch.core import DispatchQueue, QueueState
from mail_dispatch.exceptions import PayloadValidationError
from mail_dispatch.models import DispatchStatus, MessageState, Priority
from mail_dispatch.retry import RetryPolicy
from mail_dispatch.transport import DeliveryResult


class BlockingTransport:
    """Transport whose ``send`` waits until the test releases it."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def send(self, payload):
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return DeliveryResult.ok()


async def process_all(queue: DispatchQueue) -> list:
    events = []
    while (event := await queue.process_next()) is not None:
        events.append(event)
    return events


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------- ordering
@pytest.mark.asyncio
async def test_priority_order_then_fifo(make_queue, transport):
    queue = make_queue(transport)
    queue.enqueue(make_payload("A"), {"priority": "low"})
    queue.enqueue(make_payload("B"), {"priority": "high"})
    queue.enqueue(make_payload("C"), {"priority": "high"})
    queue.enqueue(make_payload("D"))

    events = await process_all(queue)

    assert transport.attempts == ["B", "C", "D", "A"]
    assert [event.status for event in events] == [DispatchStatus.SENT] * 4
    assert len(queue.scheduler) == 0


@pytest.mark.asyncio
async def test_delayed_message_does_not_block_lower_priority(make_queue, transport, clock):
    queue = make_queue(transport)
    queue.enqueue(make_payload("Later"), {"priority": "high", "scheduled_at": clock() + 30})
    queue.enqueue(make_payload("Now"), {"priority": "low"})

    await process_all(queue)
    assert transport.attempts == ["Now"]

    clock.advance(30)
    await process_all(queue)
    assert transport.attempts == ["Now", "Later"]


# ------------------------------------------------------------- rate limit
@pytest.mark.asyncio
async def test_rate_limit_defers_excess_to_next_window(make_queue, transport, clock):
    queue = make_queue(transport, rate_limit_per_minute=3)
    for idx in range(5):
        queue.enqueue(make_payload(f"M{idx}"))

    for _ in range(3):
        assert (await queue.process_next()).status is DispatchStatus.SENT
    assert await queue.process_next() is None
    assert transport.attempts == ["M0", "M1", "M2"]

    delay, rate_limited = queue._plan_wait()
    assert rate_limited is True
    assert delay == pytest.approx(60.0)
    assert queue.snapshot().sent_this_window == 3

    clock.advance(60)
    assert (await queue.process_next()).status is DispatchStatus.SENT
    assert queue.snapshot().sent_this_window == 1


@pytest.mark.asyncio
async def test_failed_attempts_do_not_use_quota(make_queue, clock):
    transport = DummyTransport(script={"Flaky": [False]})
    queue = make_queue(transport, rate_limit_per_minute=1, retry_policy=RetryPolicy(retry_delay=0))
    queue.enqueue(make_payload("Flaky"))

    first = await queue.process_next()
    second = await queue.process_next()

    assert first.status is DispatchStatus.DEFERRED
    assert second.status is DispatchStatus.SENT
    assert queue.snapshot().sent_this_window == 1


# ------------------------------------------------------------------ retry
@pytest.mark.asyncio
async def test_retry_then_success(make_queue, clock):
    transport = DummyTransport(script={"Flaky": [False, True]})
    queue = make_queue(transport)
    msg_id = queue.enqueue(make_payload("Flaky"))

    first = await queue.process_next()
    assert first.id == msg_id
    assert first.status is DispatchStatus.DEFERRED
    assert first.attempts == 1
    assert first.deferred_until.timestamp() == pytest.approx(clock() + 5.0)
    assert first.error == "provider unavailable"

    assert await queue.process_next() is None
    assert queue.scheduler.state_of(msg_id, clock()) is MessageState.PENDING

    clock.advance(5)
    second = await queue.process_next()
    assert second.status is DispatchStatus.SENT
    assert second.attempts == 2
    assert queue.snapshot().retried_total == 1
    assert msg_id not in queue.scheduler


@pytest.mark.asyncio
async def test_permanent_failure_after_max_attempts(make_queue, clock):
    transport = DummyTransport(always_fail=True)
    failures = []

    async def on_failure(event):
        failures.append(event)

    queue = make_queue(transport, failure_callback=on_failure)
    msg_id = queue.enqueue(make_payload("Doomed"), {"metadata": {"meeting": "m-42"}})

    statuses = []
    for _ in range(3):
        event = await queue.process_next()
        statuses.append(event.status)
        clock.advance(5)

    assert statuses == [DispatchStatus.DEFERRED, DispatchStatus.DEFERRED, DispatchStatus.ERROR]
    assert await queue.process_next() is None
    assert len(transport.attempts) == 3
    assert len(failures) == 1
    assert failures[0].id == msg_id
    assert failures[0].attempts == 3
    assert failures[0].metadata == {"meeting": "m-42"}
    assert failures[0].is_permanent_failure
    snapshot = queue.snapshot()
    assert snapshot.failed_total == 1
    assert snapshot.queue_length == 0


@pytest.mark.asyncio
async def test_per_message_max_attempts(make_queue):
    transport = DummyTransport(always_fail=True)
    queue = make_queue(transport)
    queue.enqueue(make_payload("Once"), {"max_attempts": 1})

    event = await queue.process_next()

    assert event.status is DispatchStatus.ERROR
    assert event.attempts == 1


@pytest.mark.asyncio
async def test_smtp_5xx_is_not_retried(make_queue):
    bounce = aiosmtplib.SMTPResponseException(550, "Mailbox unavailable")
    transport = DummyTransport(script={"Bounce": [bounce]})
    queue = make_queue(transport)
    queue.enqueue(make_payload("Bounce"))

    event = await queue.process_next()

    assert event.status is DispatchStatus.ERROR
    assert event.attempts == 1
    assert "550" in event.error


@pytest.mark.asyncio
async def test_transport_exception_is_retried(make_queue, clock):
    transport = DummyTransport(script={"Refused": [ConnectionRefusedError("refused")]})
    queue = make_queue(transport)
    queue.enqueue(make_payload("Refused"))

    first = await queue.process_next()
    clock.advance(5)
    second = await queue.process_next()

    assert first.status is DispatchStatus.DEFERRED
    assert "refused" in first.error
    assert second.status is DispatchStatus.SENT


@pytest.mark.asyncio
async def test_retry_goes_behind_same_tier(make_queue, clock):
    transport = DummyTransport(script={"First": [False]})
    queue = make_queue(transport, retry_policy=RetryPolicy(retry_delay=0))
    queue.enqueue(make_payload("First"))
    queue.enqueue(make_payload("Second"))

    await process_all(queue)

    assert transport.attempts == ["First", "Second", "First"]


@pytest.mark.asyncio
async def test_result_coercion_from_mapping_and_bool(make_queue):
    class PlainTransport:
        def __init__(self):
            self.outcomes = [{"success": False, "error": "rejected", "permanent": True}, True]

        def send(self, payload):
            return self.outcomes.pop(0)

    queue = make_queue(PlainTransport())
    queue.enqueue(make_payload("Rejected"))
    queue.enqueue(make_payload("Accepted"))

    rejected, accepted = await process_all(queue)

    assert rejected.status is DispatchStatus.ERROR
    assert rejected.error == "rejected"
    assert accepted.status is DispatchStatus.SENT


@pytest.mark.asyncio
async def test_failure_callback_errors_are_contained(make_queue):
    def on_failure(event):
        raise RuntimeError("callback broke")

    queue = make_queue(DummyTransport(always_fail=True), failure_callback=on_failure)
    queue.enqueue(make_payload("Doomed"), {"max_attempts": 1})

    event = await queue.process_next()

    assert event.status is DispatchStatus.ERROR
    assert queue.snapshot().failed_total == 1


# --------------------------------------------------------------- scheduling
@pytest.mark.asyncio
async def test_scheduled_delivery(make_queue, transport, clock):
    queue = make_queue(transport)
    msg_id = queue.enqueue(make_payload("Reminder"), {"scheduled_at": clock() + 10})

    assert await queue.process_next() is None
    [view] = queue.list_pending()
    assert view.id == msg_id
    assert view.state is MessageState.PENDING
    assert queue._plan_wait() == (pytest.approx(10.0), False)

    clock.advance(10)
    event = await queue.process_next()
    assert event.status is DispatchStatus.SENT


@pytest.mark.asyncio
async def test_past_schedule_is_eligible_now(make_queue, transport, clock):
    queue = make_queue(transport)
    queue.enqueue(make_payload("Late"), {"scheduled_at": clock() - 3600})

    assert (await queue.process_next()).status is DispatchStatus.SENT


# ------------------------------------------------------------------ enqueue
def test_enqueue_rejects_invalid_payload(make_queue, transport):
    queue = make_queue(transport)
    with pytest.raises(PayloadValidationError):
        queue.enqueue({"to": ["nobody"], "subject": "Hi", "text": "x"})
    with pytest.raises(PayloadValidationError):
        queue.enqueue(make_payload("Hi"), {"priority": "urgent"})
    assert len(queue.scheduler) == 0


def test_concurrent_enqueue_from_threads(make_queue, transport):
    queue = make_queue(transport)

    def worker(n):
        return [queue.enqueue(make_payload(f"T{n}-{i}")) for i in range(50)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        batches = list(pool.map(worker, range(8)))

    ids = [msg_id for batch in batches for msg_id in batch]
    assert len(ids) == len(set(ids)) == 400
    assert queue.snapshot().queue_length == 400
    # Submission order inside one thread is preserved.
    subjects = [message.payload.subject for message in queue.scheduler.pending()]
    for n in range(8):
        own = [s for s in subjects if s.startswith(f"T{n}-")]
        assert own == [f"T{n}-{i}" for i in range(50)]


@pytest.mark.asyncio
async def test_bulk_enqueue_preserves_order(make_queue, transport):
    queue = make_queue(transport)
    ids = queue.enqueue_bulk(
        [
            (make_payload("One"), None),
            {"payload": make_payload("Two"), "options": {"priority": "low"}},
            {"payload": make_payload("Three")},
        ]
    )

    assert len(ids) == 3
    await process_all(queue)
    assert transport.attempts == ["One", "Three", "Two"]


def test_bulk_enqueue_is_all_or_nothing(make_queue, transport):
    queue = make_queue(transport)
    with pytest.raises(PayloadValidationError) as excinfo:
        queue.enqueue_bulk(
            [
                (make_payload("Good"), None),
                ({"to": ["ada@example.com"], "subject": "No body"}, None),
            ]
        )
    assert excinfo.value.index == 1
    assert len(queue.scheduler) == 0


def test_bulk_enqueue_limit(make_queue, transport):
    queue = make_queue(transport, max_enqueue_batch=2)
    with pytest.raises(PayloadValidationError):
        queue.enqueue_bulk([(make_payload(f"M{i}"), None) for i in range(3)])
    assert queue.enqueue_bulk([]) == []


# --------------------------------------------------------------- inspection
@pytest.mark.asyncio
async def test_list_pending_shows_in_flight_first(make_queue, clock):
    transport = BlockingTransport()
    queue = make_queue(transport)
    first = queue.enqueue(make_payload("First"), {"priority": "low"})
    queue.enqueue(make_payload("Later"), {"scheduled_at": clock() + 60})
    queue.enqueue(make_payload("Waiting"), {"priority": "low"})

    task = asyncio.create_task(queue.process_next())
    await transport.entered.wait()

    views = queue.list_pending()
    assert [view.subject for view in views] == ["First", "Later", "Waiting"]
    assert [view.state for view in views] == [MessageState.IN_FLIGHT, MessageState.PENDING, MessageState.ELIGIBLE]
    assert queue.snapshot().queue_length == 3
    assert len(queue.list_pending(limit=2)) == 2

    # Clearing drops waiting messages but leaves the attempt in progress alone.
    assert queue.clear() == 2
    transport.release.set()
    event = await task
    assert event.id == first
    assert event.status is DispatchStatus.SENT
    assert queue.snapshot().queue_length == 0


def test_list_pending_default_limit(make_queue, transport):
    queue = make_queue(transport)
    for idx in range(15):
        queue.enqueue(make_payload(f"M{idx}"))
    assert len(queue.list_pending()) == 10
    assert len(queue.list_pending(limit=None)) == 15
    assert queue.list_pending(limit=0) == []


def test_snapshot_when_idle(make_queue, transport):
    queue = make_queue(transport, rate_limit_per_minute=50)
    snapshot = queue.snapshot()
    assert snapshot.queue_length == 0
    assert snapshot.processing is False
    assert snapshot.sent_this_window == 0
    assert snapshot.rate_limit_per_minute == 50
    assert snapshot.running is False
    assert queue.state is QueueState.IDLE


@pytest.mark.asyncio
async def test_results_stream(make_queue, transport):
    queue = make_queue(transport)
    msg_id = queue.enqueue(make_payload("Hello"), {"priority": Priority.HIGH})
    await queue.process_next()

    stream = queue.results()
    event = await asyncio.wait_for(stream.__anext__(), timeout=1)

    assert event.id == msg_id
    assert event.priority is Priority.HIGH
    assert event.status is DispatchStatus.SENT


@pytest.mark.asyncio
async def test_results_drop_oldest_when_full(make_queue, transport):
    queue = make_queue(transport, event_queue_size=2)
    ids = [queue.enqueue(make_payload(f"M{idx}")) for idx in range(3)]
    await process_all(queue)

    stream = queue.results()
    received = [await asyncio.wait_for(stream.__anext__(), timeout=1) for _ in range(2)]

    assert [event.id for event in received] == ids[1:]


@pytest.mark.asyncio
async def test_metrics_follow_outcomes(make_queue, clock):
    transport = DummyTransport(script={"Flaky": [False]})
    queue = make_queue(transport)
    queue.enqueue(make_payload("Flaky"), {"priority": "high", "max_attempts": 1})
    queue.enqueue(make_payload("Fine"), {"priority": "low"})

    await process_all(queue)

    registry = queue.metrics.registry
    assert registry.get_sample_value("mdq_errors_total", {"priority": "high"}) == 1
    assert registry.get_sample_value("mdq_sent_total", {"priority": "low"}) == 1
    assert registry.get_sample_value("mdq_pending_messages") == 0


# -------------------------------------------------------------- worker loop
@pytest.mark.asyncio
async def test_worker_loop_drains_queue(make_queue, transport):
    queue = make_queue(transport, clock=time.time)
    await queue.start()
    try:
        assert queue.is_running
        for idx in range(3):
            queue.enqueue(make_payload(f"M{idx}"))
        assert await queue.drain(timeout=2)
    finally:
        await queue.stop()

    assert transport.sent == ["M0", "M1", "M2"]
    assert queue.snapshot().running is False


@pytest.mark.asyncio
async def test_enqueue_from_thread_wakes_idle_worker(make_queue, transport):
    queue = make_queue(transport, clock=time.time)
    await queue.start()
    try:
        await asyncio.sleep(0.05)
        assert queue.state is QueueState.IDLE
        await asyncio.to_thread(queue.enqueue, make_payload("Threaded"))
        assert await queue.drain(timeout=2)
    finally:
        await queue.stop()

    assert transport.sent == ["Threaded"]


@pytest.mark.asyncio
async def test_worker_wakes_for_delayed_message(make_queue, transport):
    queue = make_queue(transport, clock=time.time)
    started = time.time()
    queue.enqueue(make_payload("Soon"), {"scheduled_at": started + 0.2})
    await queue.start()
    try:
        assert await queue.drain(timeout=2)
    finally:
        await queue.stop()

    assert transport.sent == ["Soon"]
    assert time.time() - started >= 0.15


@pytest.mark.asyncio
async def test_worker_waits_for_rate_window(make_queue, transport):
    queue = make_queue(transport, clock=time.time, rate_limit_per_minute=2)
    queue.rate_limiter.window_seconds = 0.2
    for idx in range(4):
        queue.enqueue(make_payload(f"M{idx}"))

    await queue.start()
    try:
        assert await queue.drain(timeout=3)
    finally:
        await queue.stop()

    assert transport.sent == ["M0", "M1", "M2", "M3"]
    assert queue.metrics.registry.get_sample_value("mdq_rate_limited_total") >= 1


@pytest.mark.asyncio
async def test_stop_keeps_undelivered_messages(make_queue):
    transport = DummyTransport(always_fail=True)
    queue = make_queue(transport, clock=time.time, retry_policy=RetryPolicy(retry_delay=60))
    msg_id = queue.enqueue(make_payload("Stuck"))

    await queue.start()
    await wait_until(lambda: len(transport.attempts) == 1 and queue.snapshot().retried_total == 1)
    await queue.stop()

    [view] = queue.list_pending()
    assert view.id == msg_id
    assert view.attempts == 1
    assert view.state is MessageState.PENDING
    assert not queue.is_running
    assert await queue.drain(timeout=0.1) is False


@pytest.mark.asyncio
async def test_stop_timeout_requeues_in_flight(make_queue):
    transport = BlockingTransport()
    queue = make_queue(transport, clock=time.time)
    msg_id = queue.enqueue(make_payload("Slow"))

    await queue.start()
    await transport.entered.wait()
    await queue.stop(timeout=0.1)

    assert queue.scheduler.in_flight() == []
    [view] = queue.list_pending()
    assert view.id == msg_id
    assert view.attempts == 0
    assert view.state is MessageState.ELIGIBLE


@pytest.mark.asyncio
async def test_processing_while_worker_sends(make_queue):
    transport = BlockingTransport()
    queue = make_queue(transport, clock=time.time)
    await queue.start()
    try:
        await asyncio.sleep(0.05)
        assert queue.snapshot().processing is False

        queue.enqueue(make_payload("Only"))
        await asyncio.wait_for(transport.entered.wait(), timeout=2)

        snapshot = queue.snapshot()
        assert snapshot.processing is True
        assert snapshot.queue_length == 1
        assert queue.state is QueueState.DRAINING

        transport.release.set()
        assert await queue.drain(timeout=2)
        await wait_until(lambda: queue.state is QueueState.IDLE)
        assert queue.snapshot().processing is False
    finally:
        transport.release.set()
        await queue.stop()


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_attempt(make_queue):
    transport = BlockingTransport()
    queue = make_queue(transport, clock=time.time)
    msg_id = queue.enqueue(make_payload("Slow"))

    await queue.start()
    await asyncio.wait_for(transport.entered.wait(), timeout=2)
    stopping = asyncio.create_task(queue.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()

    transport.release.set()
    await asyncio.wait_for(stopping, timeout=2)

    event = await asyncio.wait_for(queue.results().__anext__(), timeout=1)
    assert event.id == msg_id
    assert event.status is DispatchStatus.SENT
    assert msg_id not in queue.scheduler
    assert transport.calls == 1
    assert not queue.is_running


@pytest.mark.asyncio
async def test_threaded_enqueue_while_worker_runs(make_queue, transport):
    threads, per_thread = 4, 25
    queue = make_queue(transport, clock=time.time)

    def worker(n):
        for i in range(per_thread):
            queue.enqueue(make_payload(f"T{n}-{i}"))

    def run_all():
        with ThreadPoolExecutor(max_workers=threads) as pool:
            list(pool.map(worker, range(threads)))

    await queue.start()
    try:
        await asyncio.to_thread(run_all)
        snapshot = queue.snapshot()
        assert snapshot.queue_length + snapshot.sent_total == threads * per_thread
        assert await queue.drain(timeout=5)
    finally:
        await queue.stop()

    snapshot = queue.snapshot()
    assert snapshot.sent_total == threads * per_thread
    assert snapshot.queue_length == 0
    assert len(set(transport.sent)) == threads * per_thread
