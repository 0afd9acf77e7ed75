"""Prometheus counters for the digest engine."""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter


class DigestMetrics:
    """Counters scraped by Grafana; pass a private registry in tests."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else REGISTRY
        self.items_merged = Counter(
            "digest_items_merged_total",
            "Raw alert events merged into digests",
            ["category"],
            registry=self.registry,
        )
        self.sends = Counter(
            "digest_sends_total",
            "Digest send attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.acknowledgments = Counter(
            "digest_acknowledgments_total",
            "Digest acknowledgment requests by result",
            ["result"],
            registry=self.registry,
        )

    def record_merge(self, category: str) -> None:
        self.items_merged.labels(category=category).inc()

    def record_send(self, outcome: str) -> None:
        self.sends.labels(outcome=outcome).inc()

    def record_acknowledgment(self, result: str) -> None:
        self.acknowledgments.labels(result=result).inc()
