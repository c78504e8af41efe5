from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

UPDATES_PUBLISHED = Counter(
    "ota_updates_published_total",
    "Updates successfully published",
    ["channel"],
)
PUBLISH_FAILURES = Counter(
    "ota_publish_failures_total",
    "Publish attempts that were rejected or rolled back",
    ["reason"],
)
BUNDLE_DEDUP_HITS = Counter(
    "ota_bundle_dedup_hits_total",
    "Publishes that reused an existing bundle",
)
MANIFESTS_SERVED = Counter(
    "ota_manifests_served_total",
    "Manifests returned to devices",
    ["channel", "platform"],
)
MANIFEST_MISSES = Counter(
    "ota_manifest_misses_total",
    "Manifest requests that found no update",
    ["reason"],
)
MANIFEST_CACHE_REFRESHES = Counter(
    "ota_manifest_cache_refreshes_total",
    "Stored manifests rewritten because the regenerated document differed",
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
