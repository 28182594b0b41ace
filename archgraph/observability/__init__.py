"""
Observability & Audit Layer

RESPONSIBILITY: Audit trail, metrics and diagnostic logging setup
ALLOWED INPUTS: Audit entries and metric points from every layer
OUTPUTS: Unified audit log, metric series, audit reports

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter or interpret events (only record them)
- Make decisions based on logged data
- Block or delay other layer operations

BOUNDARY ENFORCEMENT:
=====================
- Receives immutable entries (never live state)
- Provides read-only access to logs and metrics
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple
from enum import Enum
import logging
import threading

from ..contracts.base import Timestamp, TimeRange
from ..contracts.events import AuditEventType, AuditLogEntry, MetricPoint

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

LAYERS = ("gate", "rollup", "core", "query", "engine")

DEFAULT_AUDIT_LIMIT = 10_000
DEFAULT_METRIC_POINTS = 10_000


def configure_logging(level: str = "INFO"):
    """Configure root logging once for CLI and server processes."""
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)


# =============================================================================
# LOG COLLECTORS (One per layer)
# =============================================================================

class AuditTrail:
    """
    Bounded audit buffer held by each layer until the engine collects it.

    Keeps the newest `limit` entries. `total` counts every entry ever
    appended so a reader can resume from its last offset.
    """

    def __init__(self, limit: int = DEFAULT_AUDIT_LIMIT):
        self._entries: Deque[AuditLogEntry] = deque(maxlen=limit)
        self._total = 0
        self._lock = threading.Lock()

    def append(self, entry: AuditLogEntry):
        with self._lock:
            self._entries.append(entry)
            self._total += 1

    def entries(self) -> List[AuditLogEntry]:
        with self._lock:
            return list(self._entries)

    def since(self, offset: int) -> Tuple[List[AuditLogEntry], int]:
        """Entries appended after `offset` that are still held, plus the new offset."""
        with self._lock:
            missed = self._total - offset
            if missed <= 0:
                return [], self._total
            held = list(self._entries)
            return held[-missed:] if missed < len(held) else held, self._total

    @property
    def total(self) -> int:
        return self._total

    def __len__(self) -> int:
        return len(self._entries)


class LogCollector:
    """
    Per-layer audit collector.

    Collectors are append-only - no modification of collected data. Only
    the newest `max_entries` are retained.
    """

    def __init__(self, layer_name: str, max_entries: int = DEFAULT_AUDIT_LIMIT):
        self._layer_name = layer_name
        self._entries: Deque[AuditLogEntry] = deque(maxlen=max_entries)
        self._seen: set = set()
        self._lock = threading.Lock()

    def collect(self, entry: AuditLogEntry) -> bool:
        """Collect an audit entry (append-only). Entries already held are ignored."""
        with self._lock:
            if entry.entry_id in self._seen:
                return False
            if len(self._entries) == self._entries.maxlen:
                self._seen.discard(self._entries[0].entry_id)
            self._seen.add(entry.entry_id)
            self._entries.append(entry)
            return True

    def get_entries(
        self,
        time_range: Optional[TimeRange] = None,
        event_type: Optional[AuditEventType] = None,
        workspace_id: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        """Get entries, optionally filtered."""
        with self._lock:
            entries = list(self._entries)

        if time_range:
            entries = [e for e in entries if time_range.contains(e.timestamp)]
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        if workspace_id:
            entries = [e for e in entries if e.workspace_id == workspace_id]
        return entries

    @property
    def layer_name(self) -> str:
        return self._layer_name

    @property
    def entry_count(self) -> int:
        return len(self._entries)


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

class MetricType(Enum):
    """Types of metrics collected."""
    COUNTER = "counter"
    GAUGE = "gauge"
    TIMING = "timing"


@dataclass
class MetricDefinition:
    """Definition of a metric to collect."""
    name: str
    metric_type: MetricType
    description: str
    labels: Tuple[str, ...] = field(default_factory=tuple)


class MetricsCollector:
    """
    Collect and aggregate metrics from all layers.

    Metrics are append-only time series data points. Each series keeps its
    newest `max_points`; aggregates cover that window.
    """

    def __init__(self, max_points: int = DEFAULT_METRIC_POINTS):
        self._max_points = max_points
        self._metrics: Dict[str, Deque[MetricPoint]] = {}
        self._definitions: Dict[str, MetricDefinition] = {}
        self._lock = threading.Lock()
        self._register_default_metrics()

    def _register_default_metrics(self):
        """Register standard metrics."""
        defaults = [
            MetricDefinition(
                name="change_requests_created_total",
                metric_type=MetricType.COUNTER,
                description="Change requests queued",
                labels=("request_type",)
            ),
            MetricDefinition(
                name="change_requests_applied_total",
                metric_type=MetricType.COUNTER,
                description="Change requests applied, by outcome",
                labels=("status", "outcome")
            ),
            MetricDefinition(
                name="rollup_build_duration_ms",
                metric_type=MetricType.TIMING,
                description="Roll-up rebuild time in milliseconds"
            ),
            MetricDefinition(
                name="rollup_edges",
                metric_type=MetricType.GAUGE,
                description="Roll-up edges written per level in the newest generation",
                labels=("level",)
            ),
            MetricDefinition(
                name="rollup_build_failures_total",
                metric_type=MetricType.COUNTER,
                description="Failed roll-up rebuilds"
            ),
            MetricDefinition(
                name="query_execution_time_ms",
                metric_type=MetricType.TIMING,
                description="Query execution time in milliseconds",
                labels=("query_type",)
            ),
            MetricDefinition(
                name="graph_cache_entries",
                metric_type=MetricType.GAUGE,
                description="Cached roll-up graphs"
            ),
        ]

        for definition in defaults:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition):
        """Register a new metric definition."""
        with self._lock:
            self._definitions[definition.name] = definition
            if definition.name not in self._metrics:
                self._metrics[definition.name] = deque(maxlen=self._max_points)

    def record(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        """Record a metric data point."""
        point = MetricPoint(
            metric_name=metric_name,
            value=value,
            timestamp=Timestamp.now(),
            labels=tuple(sorted(labels.items())) if labels else ()
        )
        with self._lock:
            series = self._metrics.get(metric_name)
            if series is None:
                series = self._metrics[metric_name] = deque(maxlen=self._max_points)
            series.append(point)

    def get_metric(
        self,
        metric_name: str,
        time_range: Optional[TimeRange] = None
    ) -> List[MetricPoint]:
        """Get metric data points, optionally filtered by time range."""
        with self._lock:
            points = list(self._metrics.get(metric_name, []))

        if time_range:
            points = [p for p in points if time_range.contains(p.timestamp)]
        return points

    def get_latest(self, metric_name: str) -> Optional[MetricPoint]:
        """Get the latest value for a metric."""
        points = self.get_metric(metric_name)
        return points[-1] if points else None

    def get_definition(self, metric_name: str) -> Optional[MetricDefinition]:
        return self._definitions.get(metric_name)

    def compute_aggregates(
        self,
        metric_name: str,
        time_range: Optional[TimeRange] = None
    ) -> Dict[str, float]:
        """Compute aggregate statistics for a metric."""
        points = self.get_metric(metric_name, time_range)

        if not points:
            return {}

        values = [p.value for p in points]

        return {
            'count': len(values),
            'sum': sum(values),
            'min': min(values),
            'max': max(values),
            'avg': sum(values) / len(values),
        }


# =============================================================================
# OBSERVABILITY ENGINE (Orchestrates all observability)
# =============================================================================

@dataclass
class ObservabilityConfig:
    """Configuration for observability engine."""
    enable_metrics: bool = True
    log_level: str = "INFO"
    max_audit_entries: int = DEFAULT_AUDIT_LIMIT
    max_metric_points: int = DEFAULT_METRIC_POINTS


class ObservabilityEngine:
    """
    Central Observability Engine.

    BOUNDARY ENFORCEMENT:
    - ONLY observes, never modifies
    - Provides read-only access to collected data
    """

    def __init__(self, config: Optional[ObservabilityConfig] = None):
        self._config = config or ObservabilityConfig()

        # Log collectors per layer
        self._collectors: Dict[str, LogCollector] = {
            name: LogCollector(name, self._config.max_audit_entries) for name in LAYERS
        }

        # Metrics collector
        self._metrics = (
            MetricsCollector(self._config.max_metric_points) if self._config.enable_metrics else None
        )

    def collect_audit(self, entry: AuditLogEntry):
        """Collect an audit log entry from any layer."""
        collector = self._collectors.get(entry.layer)
        if collector:
            collector.collect(entry)

    def log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        outcome: str = "success",
        details: str = "",
        layer: str = "engine",
        workspace_id: Optional[str] = None,
        event_type: AuditEventType = AuditEventType.SYSTEM,
    ):
        """Helper to log audit entry directly."""
        self.collect_audit(AuditLogEntry.create(
            layer=layer,
            event_type=event_type,
            action=action,
            workspace_id=workspace_id,
            entity_id=entity_id,
            metadata=(
                ("outcome", outcome),
                ("details", details)
            ),
        ))

    def collect_metric(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        """Collect a metric data point."""
        if self._metrics:
            self._metrics.record(metric_name, value, labels)

    def get_unified_log(
        self,
        time_range: Optional[TimeRange] = None,
        layers: Optional[List[str]] = None
    ) -> List[AuditLogEntry]:
        """Get unified log from all or specified layers."""
        target_layers = layers or list(self._collectors.keys())

        all_entries = []
        for layer_name in target_layers:
            collector = self._collectors.get(layer_name)
            if collector:
                all_entries.extend(collector.get_entries(time_range=time_range))

        # Sort by timestamp
        all_entries.sort(key=lambda e: e.timestamp.value)

        return all_entries

    def get_layer_log(
        self,
        layer_name: str,
        time_range: Optional[TimeRange] = None
    ) -> List[AuditLogEntry]:
        """Get log for a specific layer."""
        collector = self._collectors.get(layer_name)
        if not collector:
            return []
        return collector.get_entries(time_range=time_range)

    def get_metrics(self) -> Optional[MetricsCollector]:
        """Get metrics collector (read-only access)."""
        return self._metrics

    def generate_audit_report(
        self,
        time_range: Optional[TimeRange] = None
    ) -> Dict:
        """Generate audit report aggregated by layer and event type."""
        entries = self.get_unified_log(time_range=time_range)

        by_layer: Dict[str, int] = {}
        by_type: Dict[str, int] = {}

        for entry in entries:
            by_layer[entry.layer] = by_layer.get(entry.layer, 0) + 1
            by_type[entry.event_type.value] = by_type.get(entry.event_type.value, 0) + 1

        return {
            'total_entries': len(entries),
            'by_layer': by_layer,
            'by_event_type': by_type,
            'time_range': {
                'start': entries[0].timestamp.to_iso() if entries else None,
                'end': entries[-1].timestamp.to_iso() if entries else None,
            },
            'generated_at': Timestamp.now().to_iso()
        }


__all__ = [
    "DEFAULT_AUDIT_LIMIT",
    "DEFAULT_METRIC_POINTS",
    "LAYERS",
    "AuditTrail",
    "LogCollector",
    "MetricDefinition",
    "MetricType",
    "MetricsCollector",
    "ObservabilityConfig",
    "ObservabilityEngine",
    "configure_logging",
]
