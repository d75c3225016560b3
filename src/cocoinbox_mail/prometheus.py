# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring outbound mail delivery.

All metrics use the ``coco_`` prefix.

Metrics exposed:
    - ``coco_sent_total``: Counter of delivered emails per strategy.
    - ``coco_transport_errors_total``: Counter of failed attempts per strategy.
    - ``coco_domain_usage_recorded_total``: Counter of sends recorded per domain.
    - ``coco_exhausted_total``: Counter of sends for which no strategy succeeded.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, generate_latest


class MailMetrics:
    """Prometheus metrics collector for the delivery policy.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        sent: Counter of delivered emails, labeled by strategy.
        errors: Counter of transport failures, labeled by strategy.
        domain_usage: Counter of recorded sends, labeled by domain id.
        exhausted: Counter of sends that ran out of strategies.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A new one is
                created when omitted, so several services can coexist in
                one process (tests included).
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "coco_sent_total",
            "Total delivered emails",
            ["strategy"],
            registry=self.registry,
        )
        self.errors = Counter(
            "coco_transport_errors_total",
            "Total failed delivery attempts",
            ["strategy"],
            registry=self.registry,
        )
        self.domain_usage = Counter(
            "coco_domain_usage_recorded_total",
            "Total sends recorded against a domain quota",
            ["domain_id"],
            registry=self.registry,
        )
        self.exhausted = Counter(
            "coco_exhausted_total",
            "Total sends for which no delivery strategy succeeded",
            registry=self.registry,
        )

    def inc_sent(self, strategy: str) -> None:
        self.sent.labels(strategy=strategy).inc()

    def inc_error(self, strategy: str) -> None:
        self.errors.labels(strategy=strategy).inc()

    def inc_domain_usage(self, domain_id: str) -> None:
        self.domain_usage.labels(domain_id=domain_id).inc()

    def inc_exhausted(self) -> None:
        self.exhausted.inc()

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
