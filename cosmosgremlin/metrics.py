"""In-process metrics collected by the CosmosDB connector and its clients."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from enum import Enum


class ConnectionUsageKind(Enum):
    """How a connection was used."""

    WRITE = "WRITE"
    READ = "READ"
    PING = "PING"

    def __str__(self) -> str:
        return self.value


class ClientMetrics(ABC):
    """Metrics that a client reports about its connection."""

    @abstractmethod
    def increment_connectivity_error_count(self) -> None:
        """Count a failure to connect."""

    @abstractmethod
    def increment_connection_usage_count(self, kind: ConnectionUsageKind, was_an_error: bool) -> None:
        """Count one use of the connection."""


class NopClientMetrics(ClientMetrics):
    """Client metrics that record nothing."""

    def increment_connectivity_error_count(self) -> None:
        pass

    def increment_connection_usage_count(self, kind: ConnectionUsageKind, was_an_error: bool) -> None:
        pass


class _Counter:
    def __init__(self, name: str) -> None:
        self.name = name
        self._value = 0.0
        self._lock = threading.Lock()

    def inc(self) -> None:
        self.add(1.0)

    def add(self, amount: float) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class _Gauge:
    def __init__(self, name: str) -> None:
        self.name = name
        self._value = 0.0
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class _Histogram:
    def __init__(self, name: str) -> None:
        self.name = name
        self._observations: list[float] = []
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._observations.append(float(value))

    @property
    def observations(self) -> tuple[float, ...]:
        with self._lock:
            return tuple(self._observations)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._observations)

    @property
    def sum(self) -> float:
        with self._lock:
            return sum(self._observations)


class _CounterFamily:
    def __init__(self, name: str, label_names: tuple[str, ...]) -> None:
        self.name = name
        self.label_names = label_names
        self._children: dict[tuple[str, ...], _Counter] = {}
        self._lock = threading.Lock()

    def labels(self, *values: str) -> _Counter:
        if len(values) != len(self.label_names):
            raise ValueError(
                f"expected {len(self.label_names)} label values, got {len(values)}"
            )
        key = tuple(str(v) for v in values)
        with self._lock:
            counter = self._children.get(key)
            if counter is None:
                counter = self._children[key] = _Counter(self.name)
            return counter

    def snapshot(self) -> dict[tuple[str, ...], float]:
        with self._lock:
            children = dict(self._children)
        return {key: counter.value for key, counter in children.items()}


class Metrics(ClientMetrics):
    """All metrics of a connector, named with a common prefix."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

        def name(suffix: str) -> str:
            return f"{prefix}_{suffix}"

        self.connectivity_errors_total = _Counter(name("connectivity_errors_total"))
        self.connection_usage_total = _CounterFamily(
            name("connection_usage_total"), ("kind", "error")
        )
        self.status_code_total = _CounterFamily(name("status_code_total"), ("code",))
        self.request_errors_total = _Counter(name("request_errors_total"))
        self.request_retries_total = _Counter(name("request_retries_total"))
        self.request_retry_timeouts_total = _Counter(name("request_retry_timeouts_total"))
        self.server_time_per_query_response_avg_ms = _Gauge(
            name("server_time_per_query_response_avg_ms")
        )
        self.server_time_per_query_ms = _Gauge(name("server_time_per_query_ms"))
        self.request_charge_per_query_response_avg = _Gauge(
            name("request_charge_per_query_response_avg")
        )
        self.request_charge_per_query = _Gauge(name("request_charge_per_query"))
        self.request_charge_total = _Counter(name("request_charge_total"))
        self.retry_after_ms = _Histogram(name("retry_after_ms"))

    def increment_status_code(self, code: int) -> None:
        """Count one response with the given status code."""
        self.status_code_total.labels(str(code)).inc()

    def increment_connectivity_error_count(self) -> None:
        self.connectivity_errors_total.inc()

    def increment_connection_usage_count(self, kind: ConnectionUsageKind, was_an_error: bool) -> None:
        self.connection_usage_total.labels(str(kind), "true" if was_an_error else "false").inc()