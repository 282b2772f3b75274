"""
Prometheus metrics for the contract engine.

Tracks stub traffic by outcome, matching latency, loaded contracts and
producer verification results.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Generator, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class ContractMetrics:

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.stub_requests_total = Counter(
            "contract_stub_requests_total",
            "Stub server requests by outcome",
            labelnames=["outcome", "contract"],
            registry=self.registry,
        )

        self.match_duration = Histogram(
            "contract_stub_match_duration_seconds",
            "Time spent resolving a request against the contracts",
            buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
            registry=self.registry,
        )

        self.contracts_loaded = Gauge(
            "contract_contracts_loaded",
            "Contracts currently loaded per endpoint group",
            labelnames=["group"],
            registry=self.registry,
        )

        self.verifications_total = Counter(
            "contract_verifications_total",
            "Producer contract verifications by outcome",
            labelnames=["outcome"],
            registry=self.registry,
        )

        self.errors_total = Counter(
            "contract_errors_total",
            "Engine errors by code",
            labelnames=["code"],
            registry=self.registry,
        )

    def record_stub_request(self, outcome: str, contract: Optional[str] = None) -> None:
        self.stub_requests_total.labels(outcome=outcome, contract=contract or "").inc()

    def record_verification(self, passed: bool) -> None:
        self.verifications_total.labels(outcome="passed" if passed else "failed").inc()

    def record_error(self, code: str) -> None:
        self.errors_total.labels(code=code).inc()

    def set_contracts_loaded(self, group: str, count: int) -> None:
        self.contracts_loaded.labels(group=group).set(count)

    @contextmanager
    def time_match(self) -> Generator[float, None, None]:
        start_time = time.time()
        try:
            yield start_time
        finally:
            self.match_duration.observe(time.time() - start_time)


# Global metrics instance
metrics = ContractMetrics()
