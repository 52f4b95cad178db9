# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Three-tier FIFO scheduler holding the messages waiting for delivery.

Each priority tier is an insertion-ordered mapping, so ordering is
``(priority rank, insertion sequence)``: every ``high`` message sorts before
every ``medium`` one, and messages of the same tier keep submission order.

Selection is independent of position: ``next_eligible`` skips messages whose
``scheduled_at`` lies in the future, so a delayed message never blocks an
eligible one behind it, whatever their tiers.

A message returned by ``next_eligible`` is *reserved* (in flight). It is not
offered again until it is either removed or re-inserted, so one message can
never be attempted twice at the same time.

The scheduler does no locking of its own; :class:`~mail_dispatch.core.DispatchQueue`
serialises every call under its lock.

Example:
    Driving the scheduler by hand::

        scheduler = PriorityScheduler()
        scheduler.insert(message)
        msg = scheduler.next_eligible(time.time())
        if msg is not None:
            ...  # attempt delivery
            scheduler.remove(msg.id)
"""

from __future__ import annotations

import itertools
from collections import OrderedDict
from collections.abc import Iterator

from .models import MessageState, Priority, QueuedMessage


class PriorityScheduler:
    """Ordered collection of pending messages with in-flight reservation.

    Attributes:
        tiers: One ``OrderedDict`` per priority, keyed by message id.
    """

    def __init__(self) -> None:
        self.tiers: dict[Priority, OrderedDict[str, QueuedMessage]] = {
            priority: OrderedDict() for priority in sorted(Priority, key=lambda p: p.rank)
        }
        self._reserved: dict[str, QueuedMessage] = {}
        self._sequence = itertools.count(1)

    def __len__(self) -> int:
        return sum(len(tier) for tier in self.tiers.values()) + len(self._reserved)

    def __contains__(self, message_id: object) -> bool:
        if message_id in self._reserved:
            return True
        return any(message_id in tier for tier in self.tiers.values())

    @property
    def pending_count(self) -> int:
        """Messages waiting in the tiers (not in flight)."""
        return sum(len(tier) for tier in self.tiers.values())

    def insert(self, message: QueuedMessage) -> None:
        """Append ``message`` to the end of its tier.

        Re-inserting a reserved message releases the reservation; the message
        then queues behind everything already waiting in its tier.

        Raises:
            ValueError: If a message with the same id is already waiting.
        """
        tier = self.tiers[message.priority]
        if message.id in tier:
            raise ValueError(f"message {message.id} is already scheduled")
        self._reserved.pop(message.id, None)
        message.sequence = next(self._sequence)
        tier[message.id] = message

    def peek_eligible(self, now: float) -> QueuedMessage | None:
        """Return the message ``next_eligible`` would pick, without reserving it."""
        for tier in self.tiers.values():
            for message in tier.values():
                if message.is_eligible(now):
                    return message
        return None

    def next_eligible(self, now: float) -> QueuedMessage | None:
        """Reserve and return the highest-priority message due at ``now``.

        Returns ``None`` when nothing is due; this is the normal idle answer,
        including when the scheduler still holds future messages.
        """
        message = self.peek_eligible(now)
        if message is None:
            return None
        del self.tiers[message.priority][message.id]
        self._reserved[message.id] = message
        return message

    def remove(self, message_id: str) -> bool:
        """Forget a message whether waiting or in flight. Idempotent."""
        if self._reserved.pop(message_id, None) is not None:
            return True
        for tier in self.tiers.values():
            if tier.pop(message_id, None) is not None:
                return True
        return False

    def next_due(self) -> float | None:
        """Earliest ``scheduled_at`` among waiting messages, ``None`` if empty."""
        due = [message.scheduled_at for tier in self.tiers.values() for message in tier.values()]
        return min(due) if due else None

    def state_of(self, message_id: str, now: float) -> MessageState | None:
        if message_id in self._reserved:
            return MessageState.IN_FLIGHT
        for tier in self.tiers.values():
            message = tier.get(message_id)
            if message is not None:
                return MessageState.ELIGIBLE if message.is_eligible(now) else MessageState.PENDING
        return None

    def pending(self) -> Iterator[QueuedMessage]:
        """Iterate waiting messages in scheduler order."""
        for tier in self.tiers.values():
            yield from tier.values()

    def in_flight(self) -> list[QueuedMessage]:
        return list(self._reserved.values())

    def clear(self) -> int:
        """Drop every waiting message; reservations are kept. Returns the count."""
        removed = self.pending_count
        for tier in self.tiers.values():
            tier.clear()
        return removed
