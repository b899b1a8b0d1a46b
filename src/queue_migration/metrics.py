"""Prometheus metrics for the relay.

This module provides optional Prometheus metrics collection. If metrics are disabled, no-op
implementations are used instead.

Usage:
    from queue_migration.metrics import metrics

    metrics.enable_metrics(True)  # Enable metrics collection
    metrics.messages_relayed.labels(destination="localhost:5672").inc()
"""

from typing import Union

import prometheus_client


class NoopCounter:
    """Stands in for `prometheus_client.Counter` while metrics are disabled."""

    def labels(self, **labels: str) -> "NoopCounter":
        return self

    def inc(self, amount: int = 1) -> None:
        pass


messages_received = prometheus_client.Counter(
    "queue_migration_messages_received_total",
    "Messages delivered by the source broker",
    ["queue"],
)
messages_relayed = prometheus_client.Counter(
    "queue_migration_messages_relayed_total",
    "Messages published to the destination broker and acknowledged on the source",
    ["destination"],
)
relay_failures = prometheus_client.Counter(
    "queue_migration_relay_failures_total",
    "Messages that could not be published and were returned to the source queue",
    ["error_type"],
)
messages_returned = prometheus_client.Counter(
    "queue_migration_messages_returned_total",
    "Mandatory publishes the destination broker could not route",
    ["exchange"],
)
archive_failures = prometheus_client.Counter(
    "queue_migration_archive_failures_total",
    "Failed attempts to archive a message",
    ["archive"],
)
connection_attempts = prometheus_client.Counter(
    "queue_migration_connection_attempts_total",
    "Attempts to connect both brokers and start consuming",
    ["outcome"],
)


class Metrics:
    """Counters used by the relay, swapped for no-op ones unless enabled."""

    messages_received: Union[NoopCounter, prometheus_client.Counter]
    messages_relayed: Union[NoopCounter, prometheus_client.Counter]
    relay_failures: Union[NoopCounter, prometheus_client.Counter]
    messages_returned: Union[NoopCounter, prometheus_client.Counter]
    archive_failures: Union[NoopCounter, prometheus_client.Counter]
    connection_attempts: Union[NoopCounter, prometheus_client.Counter]

    def __init__(self) -> None:
        self._disable()

    def enable_metrics(self, enable: bool) -> None:
        """Point every counter at Prometheus (`enable=True`) or at a `NoopCounter`."""
        if enable:
            self._enable()
        else:
            self._disable()

    def _enable(self) -> None:
        self.messages_received = messages_received
        self.messages_relayed = messages_relayed
        self.relay_failures = relay_failures
        self.messages_returned = messages_returned
        self.archive_failures = archive_failures
        self.connection_attempts = connection_attempts

    def _disable(self) -> None:
        self.messages_received = NoopCounter()
        self.messages_relayed = NoopCounter()
        self.relay_failures = NoopCounter()
        self.messages_returned = NoopCounter()
        self.archive_failures = NoopCounter()
        self.connection_attempts = NoopCounter()


# Module-level singleton
metrics = Metrics()
