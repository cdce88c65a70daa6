import copy
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import Metric
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_relay.core.database import utcnow
from webhook_relay.core.periodic import PeriodicTask
from webhook_relay.models.metric import MetricRecord
from webhook_relay.repositories.metric_repository import MetricRepository

from .base_service import BaseService

Labels = Dict[str, str]

METRIC_HELP = {
    "webhook_deliveries_total": "Total number of webhook deliveries attempted",
    "webhook_delivery_success_total": "Total number of successful webhook deliveries",
    "webhook_delivery_failure_total": "Total number of failed webhook deliveries",
    "webhook_delivery_duration_ms": "Time spent processing a delivery in milliseconds",
    "webhook_response_time_ms": "Webhook response time in milliseconds",
    "queue_size": "Number of deliveries waiting in the queue",
    "queue_processing_count": "Number of deliveries being processed by this process",
    "queue_backlog_warnings_total": "Total number of queue backlog warnings",
}


class MetricType(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class HistogramData:
    count: int = 0
    sum: float = 0.0
    values: Deque[float] = field(default_factory=deque)


@dataclass
class MetricData:
    name: str
    type: MetricType
    value: float
    labels: Labels = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    histogram: Optional[HistogramData] = None


def metric_key(name: str, labels: Optional[Labels] = None) -> str:
    """Identity of a metric: its name plus its labels in sorted order."""
    if not labels:
        return name
    label_str = ",".join(f"{key}={labels[key]}" for key in sorted(labels))
    return f"{name}{{{label_str}}}"


def percentile_95(values) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = max(0, math.ceil(len(ordered) * 0.95) - 1)
    return ordered[index]


class _SnapshotCollector:
    """Exposes a point-in-time copy of the collector's metrics to a registry."""

    def __init__(self, metrics: List[MetricData]):
        self.metrics = metrics

    def collect(self):
        families: Dict[str, Metric] = {}
        for metric in self.metrics:
            family = families.get(metric.name)
            if family is None:
                family = _new_family(metric)
                families[metric.name] = family

            labels = {key: str(metric.labels[key]) for key in sorted(metric.labels)}
            if metric.type == MetricType.COUNTER:
                family.add_sample(family.name + "_total", labels, metric.value)
            elif metric.type == MetricType.GAUGE:
                family.add_sample(family.name, labels, metric.value)
            else:
                family.add_sample(family.name, {**labels, "quantile": "0.95"}, metric.value)
                family.add_sample(family.name + "_count", labels, metric.histogram.count)
                family.add_sample(family.name + "_sum", labels, metric.histogram.sum)
        return list(families.values())


def _new_family(metric: MetricData) -> Metric:
    documentation = METRIC_HELP.get(metric.name, metric.name)
    if metric.type == MetricType.COUNTER:
        # Counter families are named without the _total suffix
        name = metric.name[:-len("_total")] if metric.name.endswith("_total") else metric.name
        return Metric(name, documentation, "counter")
    if metric.type == MetricType.GAUGE:
        return Metric(metric.name, documentation, "gauge")
    # Windowed histograms carry no buckets, so they are exposed as summaries
    return Metric(metric.name, documentation, "summary")


class MetricsCollector(BaseService[MetricRepository]):
    """
    In-memory counters, gauges and histograms with periodic durable flush.

    Counters are cumulative and survive flushes. Gauges and histograms are
    windowed: each flush writes them and then drops them.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        repository_factory: Callable[[AsyncSession], MetricRepository] = MetricRepository,
        flush_interval: float = 30.0,
        histogram_window: int = 1000,
    ):
        super().__init__(session_factory, repository_factory)
        self.flush_interval = flush_interval
        self.histogram_window = histogram_window
        self._metrics: Dict[str, MetricData] = {}
        self._flush_task: Optional[PeriodicTask] = None

    def increment_counter(self, name: str, labels: Optional[Labels] = None, amount: float = 1) -> None:
        labels = dict(labels or {})
        key = metric_key(name, labels)
        existing = self._metrics.get(key)

        if existing is not None and existing.type == MetricType.COUNTER:
            existing.value += amount
            existing.timestamp = utcnow()
        else:
            self._metrics[key] = MetricData(name=name, type=MetricType.COUNTER, value=amount, labels=labels)

    def record_gauge(self, name: str, value: float, labels: Optional[Labels] = None) -> None:
        labels = dict(labels or {})
        self._metrics[metric_key(name, labels)] = MetricData(
            name=name,
            type=MetricType.GAUGE,
            value=value,
            labels=labels,
        )

    def record_histogram(self, name: str, value: float, labels: Optional[Labels] = None) -> None:
        labels = dict(labels or {})
        key = metric_key(name, labels)
        existing = self._metrics.get(key)

        if existing is None or existing.type != MetricType.HISTOGRAM:
            existing = MetricData(
                name=name,
                type=MetricType.HISTOGRAM,
                value=value,
                labels=labels,
                histogram=HistogramData(values=deque(maxlen=self.histogram_window)),
            )
            self._metrics[key] = existing

        histogram = existing.histogram
        histogram.count += 1
        histogram.sum += value
        histogram.values.append(value)
        existing.value = percentile_95(histogram.values)
        existing.timestamp = utcnow()

    def get_metrics(self) -> Dict[str, MetricData]:
        return {key: copy.deepcopy(metric) for key, metric in self._metrics.items()}

    def get_metrics_by_name(self, name: str) -> List[MetricData]:
        return [copy.deepcopy(metric) for metric in self._metrics.values() if metric.name == name]

    def clear(self) -> None:
        self._metrics.clear()

    async def flush(self) -> int:
        """
        Write every current metric in one transaction.

        Gauges and histograms are detached before the write, so anything
        recorded while it is in progress starts a fresh window. A failed
        write puts them back for the next attempt.
        """
        if self.session_factory is None or not self._metrics:
            return 0

        snapshot = list(self._metrics.items())
        millis = int(time.time() * 1000)
        records = [
            MetricRecord(
                id=f"{metric.name}_{millis}_{uuid.uuid4().hex[:9]}",
                metric_name=metric.name,
                metric_value=Decimal(str(metric.value)),
                labels=dict(metric.labels),
                timestamp=metric.timestamp,
            )
            for _, metric in snapshot
        ]
        detached = {
            key: self._metrics.pop(key)
            for key, metric in snapshot
            if metric.type != MetricType.COUNTER
        }

        try:
            async with self.repository("flush_metrics") as repo:
                written = await repo.add_many(records)
        except Exception:
            self._restore(detached)
            raise

        self.logger.debug("Metrics flushed to database", count=written)
        return written

    def _restore(self, detached: Dict[str, MetricData]) -> None:
        """Put detached metrics back. Gauges recorded since keep their newer value."""
        for key, metric in detached.items():
            current = self._metrics.get(key)
            if current is None:
                self._metrics[key] = metric
            elif current.type == MetricType.HISTOGRAM and metric.type == MetricType.HISTOGRAM:
                # Older samples go first so the window keeps the newest ones
                values = deque(metric.histogram.values, maxlen=self.histogram_window)
                values.extend(current.histogram.values)
                current.histogram = HistogramData(
                    count=metric.histogram.count + current.histogram.count,
                    sum=metric.histogram.sum + current.histogram.sum,
                    values=values,
                )
                current.value = percentile_95(values)

    def start(self) -> None:
        if self.session_factory is None:
            return
        if self._flush_task is not None and self._flush_task.is_running:
            return
        self._flush_task = PeriodicTask("metrics-flush", self.flush_interval, self.flush)
        self._flush_task.start()

    async def stop(self) -> None:
        """Cancel the periodic flush and flush once more."""
        if self._flush_task is not None:
            self._flush_task.stop()
            self._flush_task = None
        try:
            await self.flush()
        except Exception as e:
            self.logger.error("Final metrics flush failed", error=str(e), pending=len(self._metrics))

    def get_prometheus_metrics(self) -> str:
        """Current metrics in the Prometheus text exposition format."""
        if not self._metrics:
            return "# No metrics available\n"

        registry = CollectorRegistry(auto_describe=False)
        registry.register(_SnapshotCollector(list(self.get_metrics().values())))
        return generate_latest(registry).decode("utf-8")
