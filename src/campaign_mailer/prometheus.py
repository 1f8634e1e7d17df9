# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for the campaign queue processor.

All metrics use the ``cm_`` prefix (campaign-mailer).

Metrics exposed:
    - ``cm_sent_total``: jobs delivered, by trigger source.
    - ``cm_failed_total``: jobs marked FAILED, by reason.
    - ``cm_retried_total``: jobs rescheduled after a retryable failure.
    - ``cm_claim_conflicts_total``: claims lost to a concurrent worker.
    - ``cm_pending_jobs``: jobs currently PENDING or SENDING.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class MailerMetrics:
    """Prometheus collectors for the queue processor.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "cm_sent_total",
            "Total delivered email jobs",
            ["source"],
            registry=self.registry,
        )
        self.failed = Counter(
            "cm_failed_total",
            "Total email jobs marked as failed",
            ["reason"],
            registry=self.registry,
        )
        self.retried = Counter(
            "cm_retried_total",
            "Total email jobs rescheduled for retry",
            registry=self.registry,
        )
        self.claim_conflicts = Counter(
            "cm_claim_conflicts_total",
            "Total job claims lost to another worker",
            registry=self.registry,
        )
        self.pending = Gauge(
            "cm_pending_jobs",
            "Email jobs waiting for or undergoing delivery",
            registry=self.registry,
        )

    def inc_sent(self, source: str) -> None:
        self.sent.labels(source=source or "scheduler").inc()

    def inc_failed(self, reason: str) -> None:
        """Increment the failure counter.

        Args:
            reason: One of ``permanent``, ``max_retries``, ``credentials``,
                ``content`` or ``unexpected``.
        """
        self.failed.labels(reason=reason or "permanent").inc()

    def inc_retried(self) -> None:
        self.retried.inc()

    def inc_claim_conflict(self) -> None:
        self.claim_conflicts.inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
