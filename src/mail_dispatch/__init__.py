"""In-process dispatch queue for rate-limited outbound notification email.

This package schedules meeting summaries, reminders and follow-ups through a
delivery provider that caps sends per minute:

- Three-tier priority scheduling, FIFO within a tier
- Immediate and delayed delivery
- Fixed-window rate limiting of successful sends
- Bounded retries with a flat (or exponential) delay
- Structured delivery events and Prometheus metrics
- FastAPI REST API for submission and status

Example:
    Basic usage::

        from mail_dispatch import DispatchQueue, SMTPTransport

        queue = DispatchQueue(SMTPTransport("smtp.example.com", 587))
        await queue.start()
        queue.enqueue({"to": ["ada@example.com"], "subject": "Hi", "text": "..."})

Authors:
    Softwell S.r.l.
"""

from .core import DispatchQueue, QueueState
from .exceptions import DeliveryError, MailDispatchError, PayloadValidationError
from .models import (
    DispatchEvent,
    DispatchStatus,
    EnqueueOptions,
    MessagePayload,
    MessageState,
    PendingMessageView,
    Priority,
    QueueSnapshot,
)
from .rate_limit import RateLimiter
from .retry import RetryPolicy
from .scheduler import PriorityScheduler
from .transport import DeliveryResult, ResendTransport, SMTPTransport

__all__ = [
    "DeliveryError",
    "DeliveryResult",
    "DispatchEvent",
    "DispatchQueue",
    "DispatchStatus",
    "EnqueueOptions",
    "MailDispatchError",
    "MessagePayload",
    "MessageState",
    "PayloadValidationError",
    "PendingMessageView",
    "Priority",
    "PriorityScheduler",
    "QueueSnapshot",
    "QueueState",
    "RateLimiter",
    "ResendTransport",
    "RetryPolicy",
    "SMTPTransport",
]
