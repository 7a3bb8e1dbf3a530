"""
Prometheus Metrics for the WASM KV Runner

Tracks guest invocations, capability calls and module compilation.
"""
from prometheus_client import Counter, Histogram, Info, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry
from fastapi import Response

# Create a custom registry to avoid conflicts
REGISTRY = CollectorRegistry(auto_describe=True)

# =============================================================================
# COUNTERS
# =============================================================================

invocations_total = Counter(
    'runner_invocations_total',
    'Total guest invocations',
    ['status'],
    registry=REGISTRY
)

capability_calls_total = Counter(
    'runner_capability_calls_total',
    'Capability calls issued by guests',
    ['operation', 'backend'],
    registry=REGISTRY
)

module_compilations_total = Counter(
    'runner_module_compilations_total',
    'Guest module compilations',
    ['status'],
    registry=REGISTRY
)

# =============================================================================
# HISTOGRAMS
# =============================================================================

invocation_duration_seconds = Histogram(
    'runner_invocation_duration_seconds',
    'Wall time from instantiation to extracted result',
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    registry=REGISTRY
)

result_size_bytes = Histogram(
    'runner_result_size_bytes',
    'Size of results returned by guests',
    buckets=[0, 16, 256, 4096, 65536, 1048576],
    registry=REGISTRY
)

# =============================================================================
# INFO
# =============================================================================

service_info = Info(
    'runner_service',
    'WASM KV runner information',
    registry=REGISTRY
)

service_info.info({
    'version': '0.1.0',
    'component': 'wasm-runner',
    'runtime': 'wasmtime'
})

# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def track_invocation(status: str, duration: float, result_size: int = 0):
    """Track one guest invocation."""
    invocations_total.labels(status=status).inc()
    invocation_duration_seconds.observe(duration)
    if status == 'success':
        result_size_bytes.observe(result_size)

def track_capability_call(operation: str, backend: str):
    """Track a write_key/read_key call."""
    capability_calls_total.labels(operation=operation, backend=backend).inc()

def track_compilation(status: str):
    module_compilations_total.labels(status=status).inc()

# =============================================================================
# METRICS ENDPOINT
# =============================================================================

def get_metrics():
    """Generate Prometheus metrics response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )
