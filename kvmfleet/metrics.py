"""Prometheus metrics for fleet runs.

Phase durations and failure counts for VM provisioning and cluster
assembly. A run is a batch job, so the metrics are written once to a
node_exporter textfile instead of being served.
"""
from __future__ import annotations

import logging

from prometheus_client import CollectorRegistry, Counter, Histogram, write_to_textfile

logger = logging.getLogger(__name__)

REGISTRY = CollectorRegistry()

vm_phase_duration = Histogram(
    "kvmfleet_vm_phase_seconds",
    "Duration of VM provisioning phases",
    ["phase", "status"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, float("inf")),
    registry=REGISTRY,
)

vm_failures = Counter(
    "kvmfleet_vm_failures_total",
    "Total VMs that failed provisioning",
    ["phase"],
    registry=REGISTRY,
)

fleet_ready_duration = Histogram(
    "kvmfleet_fleet_ready_seconds",
    "Time from launch until the whole fleet was ready",
    buckets=(30, 60, 120, 300, 600, 1200, 1800, 3600, float("inf")),
    registry=REGISTRY,
)

cluster_operation_duration = Histogram(
    "kvmfleet_cluster_operation_seconds",
    "Duration of cluster assembly operations",
    ["operation", "status"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, float("inf")),
    registry=REGISTRY,
)


def export_metrics(path: str) -> None:
    """Write all fleet metrics in Prometheus text format to ``path``."""
    if not path:
        return
    try:
        write_to_textfile(path, REGISTRY)
        logger.info(f"Wrote metrics to {path}")
    except OSError as e:
        logger.warning(f"Could not write metrics to {path}: {e}")
