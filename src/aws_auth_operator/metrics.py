"""Prometheus metrics for the AWS Auth Operator."""

from prometheus_client import Counter, Gauge, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "aws_auth_operator_reconcile_total",
    "Total number of reconciliations",
    ["kind", "result"],
)

reconcile_duration_seconds = Histogram(
    "aws_auth_operator_reconcile_duration_seconds",
    "Duration of reconciliations in seconds",
    ["kind"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

error_total = Counter(
    "aws_auth_operator_error_total",
    "Total number of reconciliation errors",
    ["kind", "error_type"],
)

resource_status_total = Counter(
    "aws_auth_operator_resource_status_total",
    "Resource status transitions",
    ["kind", "status"],
)

# IAM operation metrics
iam_operations_total = Counter(
    "aws_auth_operator_iam_operations_total",
    "Total number of mutating IAM operations",
    ["operation", "result"],
)

# Configuration drift detection metrics
drift_detected_total = Counter(
    "aws_auth_operator_drift_detected_total",
    "Total number of configuration drift detections",
    ["kind", "resource_type"],
)

# API call metrics
api_call_total = Counter(
    "aws_auth_operator_api_call_total",
    "Total number of API calls",
    ["api_type", "operation", "result"],
)

api_call_duration_seconds = Histogram(
    "aws_auth_operator_api_call_duration_seconds",
    "Duration of API calls in seconds",
    ["api_type", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0],
)

rate_limit_hits_total = Counter(
    "aws_auth_operator_rate_limit_hits_total",
    "Total number of rate limit hits",
    ["api_type"],
)

throttle_retries_total = Counter(
    "aws_auth_operator_throttle_retries_total",
    "Total number of in-client retries after AWS throttling",
    ["operation"],
)

# Work queue metrics
queue_depth = Gauge(
    "aws_auth_operator_queue_depth",
    "Number of keys waiting in the work queue",
)

queue_requeues_total = Counter(
    "aws_auth_operator_queue_requeues_total",
    "Total number of requeues",
    ["reason"],
)

watch_restarts_total = Counter(
    "aws_auth_operator_watch_restarts_total",
    "Total number of watch stream restarts",
    ["reason"],
)
