# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for the dispatch queue.

All metrics use the ``mdq_`` prefix and live in a private registry so several
queues (or test cases) never collide.

Metrics exposed:
    - ``mdq_sent_total``: Successful deliveries per priority.
    - ``mdq_errors_total``: Permanent failures per priority.
    - ``mdq_deferred_total``: Failed attempts scheduled for a retry.
    - ``mdq_rate_limited_total``: Times the worker waited for the rate window.
    - ``mdq_pending_messages``: Messages currently held by the queue.

Example:
    Served by the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class QueueMetrics:
    """Prometheus counters and gauge describing the dispatch queue.

    Attributes:
        registry: The ``CollectorRegistry`` holding every metric.
        sent: Counter of successful deliveries.
        errors: Counter of permanent failures.
        deferred: Counter of retries scheduled.
        rate_limited: Counter of rate-limit waits.
        pending: Gauge of held messages.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "mdq_sent_total",
            "Total sent emails",
            ["priority"],
            registry=self.registry,
        )
        self.errors = Counter(
            "mdq_errors_total",
            "Total permanently failed emails",
            ["priority"],
            registry=self.registry,
        )
        self.deferred = Counter(
            "mdq_deferred_total",
            "Total failed attempts scheduled for retry",
            ["priority"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "mdq_rate_limited_total",
            "Total rate limit waits",
            registry=self.registry,
        )
        self.pending = Gauge(
            "mdq_pending_messages",
            "Current messages held by the queue",
            registry=self.registry,
        )

    def inc_sent(self, priority: str) -> None:
        """Increase the ``sent`` counter for the given priority.

        Args:
            priority: Priority label of the delivered message; empty means
                ``medium``.
        """
        self.sent.labels(priority=priority or "medium").inc()

    def inc_error(self, priority: str) -> None:
        """Increase the ``errors`` counter for the given priority.

        Args:
            priority: Priority label of the permanently failed message.
        """
        self.errors.labels(priority=priority or "medium").inc()

    def inc_deferred(self, priority: str) -> None:
        """Increase the ``deferred`` counter for the given priority.

        Args:
            priority: Priority label of the message scheduled for a retry.
        """
        self.deferred.labels(priority=priority or "medium").inc()

    def inc_rate_limited(self) -> None:
        """Increase the ``rate_limited`` counter by one wait."""
        self.rate_limited.inc()

    def set_pending(self, value: int) -> None:
        """Update the gauge tracking held messages.

        Args:
            value: Messages currently held, in-flight one included.
        """
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the metrics in Prometheus text exposition format.

        Returns:
            bytes: Serialized metrics for the ``/metrics`` endpoint.
        """
        return generate_latest(self.registry)
