"""
Prometheus metrics for the phone auth backend.

- http_requests_total{method,path,status} and request_latency_seconds{method,path},
  fed by RequestLoggingMiddleware
- auth_requests_total{endpoint,result}, fed by log_auth_outcome

Paths outside the backend's own routes share the "unmatched" label so
scanners cannot grow the label set.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


ROUTE_PATHS = frozenset({
    "/api/verify-token",
    "/api/create-custom-token",
    "/api/get-user-by-phone",
    "/api/revoke-tokens",
    "/api/health",
    "/metrics",
})
UNMATCHED_PATH = "unmatched"


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests served by the phone auth backend",
    labelnames=["method", "path", "status"]
)

# result: verified, invalid_token, missing_input, created, issued,
# found, not_found, revoked
auth_requests_total = Counter(
    "auth_requests_total",
    "Outcomes of the /api auth endpoints",
    labelnames=["endpoint", "result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Time from request received to response sent",
    labelnames=["method", "path"]
)


# =============================================================================
# Recording
# =============================================================================

def route_label(path: str) -> str:
    path = path.split("?", 1)[0].rstrip("/") or "/"
    return path if path in ROUTE_PATHS else UNMATCHED_PATH


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    route = route_label(path)
    http_requests_total.labels(method=method, path=route, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=route).observe(latency_seconds)


def record_auth_outcome(endpoint: str, result: str) -> None:
    auth_requests_total.labels(endpoint=endpoint, result=result).inc()


def get_metrics() -> bytes:
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
