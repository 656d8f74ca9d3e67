"""Metrics collection and monitoring"""

import time
from typing import Dict, Any
from collections import defaultdict, deque
from datetime import datetime, timezone
import threading
from prometheus_client import CollectorRegistry, Counter, Histogram, Gauge, start_http_server

# Recent samples kept per latency metric for the in-process summary
LATENCY_WINDOW = 1000


class MetricsCollector:
    """
    Collects and exposes forwarder metrics
    """

    def __init__(self, enable_prometheus: bool = True, port: int = 9090, logger=None):
        """
        Initialize metrics collector

        Args:
            enable_prometheus: Enable Prometheus metrics endpoint
            port: Port for Prometheus metrics server
            logger: Logger instance used to report endpoint problems
        """
        self.enable_prometheus = enable_prometheus
        self.logger = logger
        self._lock = threading.Lock()

        self._counters = defaultdict(int)
        self._histograms = defaultdict(lambda: deque(maxlen=LATENCY_WINDOW))
        self._histogram_totals = defaultdict(int)
        self._gauges = defaultdict(float)

        if enable_prometheus:
            self.registry = CollectorRegistry()
            self._setup_prometheus_metrics()
            try:
                start_http_server(port, registry=self.registry)
            except OSError as e:
                if self.logger:
                    self.logger.warning(f"Metrics endpoint unavailable on port {port}: {e}")

    def _setup_prometheus_metrics(self):
        """Setup Prometheus metrics"""
        self._prometheus_counters = {
            'messages_received': Counter(
                'forwarder_messages_received_total',
                'Total number of MQTT messages received',
                registry=self.registry
            ),
            'messages_forwarded': Counter(
                'forwarder_messages_forwarded_total',
                'Total number of messages inserted into the database',
                registry=self.registry
            ),
            'translation_rejected': Counter(
                'forwarder_translation_rejected_total',
                'Total number of payloads rejected by the record translator',
                registry=self.registry
            ),
            'sink_rejected': Counter(
                'forwarder_sink_rejected_total',
                'Total number of inserts rejected by the database',
                registry=self.registry
            ),
            'session_ready': Counter(
                'forwarder_session_ready_total',
                'Number of times the broker session became ready',
                registry=self.registry
            ),
            'processing_failed': Counter(
                'forwarder_processing_failed_total',
                'Total number of messages dropped on an unexpected error',
                registry=self.registry
            ),
            'connect_failures': Counter(
                'forwarder_connect_failures_total',
                'Number of failed broker connect or subscribe attempts',
                registry=self.registry
            ),
        }

        self._prometheus_histograms = {
            'insert': Histogram(
                'forwarder_insert_latency_seconds',
                'Time taken to translate and insert one message (dropped ones included)',
                buckets=[0.001, 0.01, 0.1, 0.5, 1.0, 5.0],
                registry=self.registry
            ),
        }

        self._prometheus_gauges = {
            'broker_connected': Gauge(
                'forwarder_broker_connected',
                'Whether the broker session is ready (1) or not (0)',
                registry=self.registry
            ),
        }

    def increment_counter(self, name: str, value: int = 1):
        """Increment a counter metric"""
        with self._lock:
            self._counters[name] += value

        if self.enable_prometheus and name in self._prometheus_counters:
            self._prometheus_counters[name].inc(value)

    def record_latency(self, name: str, duration_seconds: float):
        """Record a latency measurement"""
        with self._lock:
            self._histograms[name].append(duration_seconds)
            self._histogram_totals[name] += 1

        if self.enable_prometheus and name in self._prometheus_histograms:
            self._prometheus_histograms[name].observe(duration_seconds)

    def set_gauge(self, name: str, value: float):
        """Set a gauge metric"""
        with self._lock:
            self._gauges[name] = value

        if self.enable_prometheus and name in self._prometheus_gauges:
            self._prometheus_gauges[name].set(value)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""
        with self._lock:
            summary = {
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'counters': dict(self._counters),
                'gauges': dict(self._gauges),
                'histograms': {}
            }

            for name, values in self._histograms.items():
                if values:
                    summary['histograms'][name] = {
                        'count': self._histogram_totals[name],
                        'window': len(values),
                        'min': min(values),
                        'max': max(values),
                        'avg': sum(values) / len(values)
                    }

            return summary

    def reset_metrics(self):
        """Reset all metrics (useful for testing)"""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._histogram_totals.clear()
            self._gauges.clear()


class Timer:
    """Context manager for timing operations"""

    def __init__(self, metrics: MetricsCollector, metric_name: str):
        self.metrics = metrics
        self.metric_name = metric_name
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time
        self.metrics.record_latency(self.metric_name, duration)
