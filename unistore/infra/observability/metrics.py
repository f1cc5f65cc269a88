from prometheus_client import Counter, Histogram

from unistore.common.config import get_settings

# Low-cardinality labels only: scheme, operation, outcome code. Never keys or buckets.
OPERATIONS = Counter(
    "storage_operations_total",
    "Total storage operations",
    ["scheme", "operation", "outcome"],
)

LATENCY = Histogram(
    "storage_operation_duration_seconds",
    "Storage operation latency in seconds",
    ["scheme", "operation"],
)

TRANSFERRED_BYTES = Counter(
    "storage_transfer_bytes_total",
    "Bytes streamed through the transfer engine",
    ["scheme", "direction"],
)

CHUNK_RETRIES = Counter(
    "storage_chunk_retries_total",
    "Chunk attempts retried after a transient failure",
    ["scheme", "error"],
)


def _enabled(enabled: bool | None) -> bool:
    # callers holding their own Settings pass its flag; others follow the environment
    if enabled is None:
        return get_settings().ENABLE_METRICS
    return enabled


def record_operation(
    scheme: str,
    operation: str,
    outcome: str,
    elapsed: float,
    *,
    enabled: bool | None = None,
) -> None:
    if not _enabled(enabled):
        return
    OPERATIONS.labels(scheme, operation, outcome).inc()
    LATENCY.labels(scheme, operation).observe(elapsed)


def record_bytes(scheme: str, direction: str, count: int, *, enabled: bool | None = None) -> None:
    if count and _enabled(enabled):
        TRANSFERRED_BYTES.labels(scheme, direction).inc(count)


def record_retry(scheme: str, error: str, *, enabled: bool | None = None) -> None:
    if _enabled(enabled):
        CHUNK_RETRIES.labels(scheme, error).inc()
