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

WEBHOOK_EVENTS = Counter(
    "deploy_relay_webhook_events_total",
    "Inbound webhook events by outcome",
    ["platform", "outcome"],
)
DEPLOYMENTS_TOTAL = Counter(
    "deploy_relay_deployments_total",
    "Finished deployments by terminal status",
    ["status"],
)
OUTCOMES_DROPPED = Counter(
    "deploy_relay_outcomes_dropped_total",
    "Deployment outcomes that could not be persisted after all retries",
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
