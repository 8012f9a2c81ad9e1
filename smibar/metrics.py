"""Prometheus metrics for smibar."""

from typing import cast

from prometheus_client import (
    Counter,
    Enum,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY,
)

from smibar.models import ConnectionStatus, GPUSnapshot

# HTTP API metrics
REQUESTS_TOTAL = Counter(
    "smibar_requests_total",
    "Total number of API requests",
    ["endpoint", "method"],
)

REQUEST_DURATION = Histogram(
    "smibar_request_duration_seconds",
    "API request duration in seconds",
    ["endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf")),
)

ERRORS_TOTAL = Counter(
    "smibar_errors_total",
    "Total number of API errors",
    ["endpoint", "error_type"],
)

# Poll metrics
POLL_ATTEMPTS_TOTAL = Counter(
    "smibar_poll_attempts_total",
    "Remote GPU queries issued by the poll worker",
    ["outcome"],  # "success" or "failure"
)

POLL_FAILURES_TOTAL = Counter(
    "smibar_poll_failures_total",
    "Failed remote GPU queries by classified error code",
    ["error_code"],
)

QUERY_DURATION = Histogram(
    "smibar_query_duration_seconds",
    "Wall time of one remote nvidia-smi query over ssh",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 15.0, float("inf")),
)

CONSECUTIVE_FAILURES = Gauge(
    "smibar_consecutive_failures",
    "Consecutive failed attempts against the active target",
)

CONNECTION_STATUS = Enum(
    "smibar_connection_status",
    "Connection status of the active session",
    states=[s.value for s in ConnectionStatus],
)

# Per-GPU metrics from the latest snapshot
GPU_UTILIZATION_PCT = Gauge("smibar_gpu_utilization_pct", "GPU utilization", ["gpu_index"])
GPU_TEMPERATURE_C = Gauge("smibar_gpu_temperature_celsius", "GPU temperature", ["gpu_index"])
GPU_MEMORY_USED_MIB = Gauge("smibar_gpu_memory_used_mib", "Used VRAM per GPU", ["gpu_index"])
GPU_MEMORY_TOTAL_MIB = Gauge("smibar_gpu_memory_total_mib", "Total VRAM per GPU", ["gpu_index"])
GPU_POWER_DRAW_W = Gauge("smibar_gpu_power_draw_watts", "GPU power draw", ["gpu_index"])


def record_snapshot(snapshot: GPUSnapshot) -> None:
    """Update per-GPU gauges. Unreported power draw (-1) is not exported."""
    for gpu in snapshot:
        idx = str(gpu.index)
        GPU_UTILIZATION_PCT.labels(gpu_index=idx).set(gpu.util)
        GPU_TEMPERATURE_C.labels(gpu_index=idx).set(gpu.temp)
        GPU_MEMORY_USED_MIB.labels(gpu_index=idx).set(gpu.mem_used)
        GPU_MEMORY_TOTAL_MIB.labels(gpu_index=idx).set(gpu.mem_total)
        if gpu.power_draw >= 0:
            GPU_POWER_DRAW_W.labels(gpu_index=idx).set(gpu.power_draw)


def clear_gpu_metrics() -> None:
    """Forget per-GPU series, e.g. when the target changes."""
    for gauge in (
        GPU_UTILIZATION_PCT,
        GPU_TEMPERATURE_C,
        GPU_MEMORY_USED_MIB,
        GPU_MEMORY_TOTAL_MIB,
        GPU_POWER_DRAW_W,
    ):
        gauge.clear()


def generate_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    result = generate_latest(REGISTRY)
    return cast(bytes, result) if result else b""
