# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the email dispatch engine.

All metrics use the ``eds_`` prefix (email dispatch service).

Metrics exposed:
    - ``eds_sent_total``: Emails accepted by the provider, per email type.
    - ``eds_failed_total``: Failed attempts, per email type and reason code.
    - ``eds_skipped_total``: Policy or rate-limit skips, per type and reason.
    - ``eds_provider_events_total``: Provider callbacks, per status and
      whether they were applied.
    - ``eds_campaigns_total``: Campaign dispatch outcomes (sent / failed).
    - ``eds_queue_depth``: Work items waiting for the dispatch worker.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DispatchMetrics:
    """Prometheus metrics collector for the dispatch engine.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private registry
                is created when omitted, so several engines (or tests) never
                collide on metric names.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "eds_sent_total",
            "Emails accepted by the provider",
            ["email_type"],
            registry=self.registry,
        )
        self.failed = Counter(
            "eds_failed_total",
            "Failed delivery attempts",
            ["email_type", "reason"],
            registry=self.registry,
        )
        self.skipped = Counter(
            "eds_skipped_total",
            "Skipped delivery attempts",
            ["email_type", "reason"],
            registry=self.registry,
        )
        self.provider_events = Counter(
            "eds_provider_events_total",
            "Provider status callbacks",
            ["status", "applied"],
            registry=self.registry,
        )
        self.campaigns = Counter(
            "eds_campaigns_total",
            "Campaign dispatch outcomes",
            ["outcome"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "eds_queue_depth",
            "Work items waiting for the dispatch worker",
            registry=self.registry,
        )

    def inc_sent(self, email_type: str) -> None:
        self.sent.labels(email_type=email_type).inc()

    def inc_failed(self, email_type: str, reason: str) -> None:
        self.failed.labels(email_type=email_type, reason=reason).inc()

    def inc_skipped(self, email_type: str, reason: str) -> None:
        self.skipped.labels(email_type=email_type, reason=reason).inc()

    def inc_provider_event(self, status: str, applied: bool) -> None:
        self.provider_events.labels(status=status, applied="yes" if applied else "no").inc()

    def inc_campaign(self, outcome: str) -> None:
        self.campaigns.labels(outcome=outcome).inc()

    def set_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    def generate_latest(self) -> bytes:
        """Return the registry in Prometheus text exposition format."""
        return generate_latest(self.registry)
