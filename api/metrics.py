"""Prometheus metrics for the face catalog API."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "Request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
ACTIVE_REQUESTS = Gauge(
    "http_requests_in_progress",
    "Number of requests currently being processed",
)
IDENTIFY_COUNT = Counter(
    "identify_requests_total",
    "Identification requests by outcome",
    ["status"],
)
IDENTIFIED_FACES = Counter(
    "identified_faces_total",
    "Faces observed by identification requests",
    ["known"],
)
MUTATION_COUNT = Counter(
    "catalog_mutations_total",
    "Catalog mutations by operation and outcome",
    ["operation", "status"],
)
CATALOG_ERRORS = Counter(
    "catalog_errors_total",
    "Catalog errors returned to clients",
    ["kind", "code"],
)

__all__ = [
    "CONTENT_TYPE_LATEST",
    "generate_latest",
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "ACTIVE_REQUESTS",
    "IDENTIFY_COUNT",
    "IDENTIFIED_FACES",
    "MUTATION_COUNT",
    "CATALOG_ERRORS",
]
