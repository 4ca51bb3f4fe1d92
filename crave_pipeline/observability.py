"""
Observability instrumentation for the Crave pipeline.

1. **Structured Logging**
   - JSON logs via python-json-logger, including every ``extra={...}`` field
   - Job correlation id attached to each record
   - Test mode support for clean pytest output

2. **Prometheus Metrics**
   - Rate-limit decisions per service
   - Duplicate detection and extraction counters
   - Entity resolution outcomes per tier
   - Stage duration histograms and job outcomes
   - Non-fatal error counter labelled by error kind and stage

Environment Variables:
    SERVICE_NAME: Service name attached to log records (default: "crave-pipeline")
    TESTING: Set to "true" to use a plain text log format

Logging is configured when this module is imported; call
configure_logging(level) again to change the level at runtime.
"""

import logging
import os
from typing import Any

from prometheus_client import Counter, Gauge, Histogram
from pythonjsonlogger import jsonlogger

from crave_pipeline.core.config import settings
from crave_pipeline.core.context import get_correlation_id

# =============================================================================
# Logging Configuration
# =============================================================================

# Reserved log record attributes that should not be treated as extra fields
RESERVED_LOG_ATTRS = frozenset({
    "args", "asctime", "created", "exc_info", "exc_text", "filename",
    "funcName", "levelname", "levelno", "lineno", "module", "msecs",
    "message", "msg", "name", "pathname", "process", "processName",
    "relativeCreated", "stack_info", "thread", "threadName", "taskName",
    "correlation_id", "service",
})


class StructuredJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that includes the job correlation id and extra fields.

    Output includes:
    - Standard log fields (timestamp, level, logger name, message)
    - correlation_id of the job being processed, when one is bound
    - Service name for multi-service environments
    - All extra fields passed via logger.info("msg", extra={...})
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(
            *args,
            **kwargs,
            timestamp=True,
        )
        self.service_name = os.getenv("SERVICE_NAME", "crave-pipeline")

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add custom fields to the JSON log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self.service_name

        correlation_id = get_correlation_id()
        if correlation_id:
            log_record["correlation_id"] = correlation_id

        for key, value in record.__dict__.items():
            if key not in RESERVED_LOG_ATTRS and not key.startswith("_"):
                if key not in log_record:
                    log_record[key] = value


def configure_logging(level: str | int | None = None) -> None:
    """
    Configure structured JSON logging on the root logger.

    In test mode (TESTING=true), uses simplified text format to avoid
    noise during pytest.

    Example JSON output:
        {"timestamp": "2025-01-15T10:30:00Z", "level": "INFO",
         "logger": "crave_pipeline.pipeline.orchestrator",
         "message": "Job completed", "service": "crave-pipeline",
         "correlation_id": "req-123", "post_id": "t3_abc", "mentions": 4}
    """
    level = level or settings.LOG_LEVEL
    is_testing = os.getenv("TESTING", "false").lower() == "true"

    if is_testing:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        logging.basicConfig(level=level, format=log_format, force=True)
        return

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(StructuredJsonFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


# Initialize logging configuration at module load
configure_logging()


# =============================================================================
# Prometheus Metrics Definitions
# =============================================================================

# Counter: rate limit decisions
# - decision: allowed, denied, unconfigured
rate_limit_decisions_total = Counter(
    name="crave_rate_limit_decisions_total",
    documentation="Rate limit permission decisions",
    labelnames=["service", "decision"],
)

# Counter: upstream 429 responses reported back to the coordinator
rate_limit_hits_reported_total = Counter(
    name="crave_rate_limit_hits_reported_total",
    documentation="Upstream rate limit responses reported to the coordinator",
    labelnames=["service"],
)

# Counter: items seen by the duplicate detector
# - outcome: unique, duplicate, skipped
duplicate_items_total = Counter(
    name="crave_duplicate_detection_items_total",
    documentation="Items processed by duplicate detection",
    labelnames=["outcome"],
)

duplicate_cache_size = Gauge(
    name="crave_duplicate_cache_entries",
    documentation="Entries currently held in the duplicate tracking cache",
)

# Counter: LLM extraction requests
# - outcome: success, error
extraction_requests_total = Counter(
    name="crave_extraction_requests_total",
    documentation="LLM extraction requests",
    labelnames=["provider", "outcome"],
)

extraction_repairs_total = Counter(
    name="crave_extraction_json_repairs_total",
    documentation="Truncated LLM responses recovered by JSON repair",
)

extraction_dropped_mentions_total = Counter(
    name="crave_extraction_dropped_mentions_total",
    documentation="Mentions dropped because they failed schema validation",
)

# Counter: resolution outcomes
# - tier: exact, alias, fuzzy, created, ambiguous
resolution_outcomes_total = Counter(
    name="crave_resolution_outcomes_total",
    documentation="Entity resolution outcomes by tier",
    labelnames=["entity_type", "tier"],
)

# Counter: every non-fatal error, by kind and pipeline stage
pipeline_errors_total = Counter(
    name="crave_pipeline_errors_total",
    documentation="Errors recorded by the pipeline",
    labelnames=["kind", "stage"],
)

# Counter: job outcomes
# - status: completed, failed
jobs_total = Counter(
    name="crave_jobs_total",
    documentation="Processing jobs by final status",
    labelnames=["status"],
)

# Histogram: duration of each pipeline stage in seconds
stage_duration_seconds = Histogram(
    name="crave_stage_duration_seconds",
    documentation="Pipeline stage duration in seconds",
    labelnames=["stage"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

active_jobs = Gauge(
    name="crave_active_jobs",
    documentation="Jobs currently being processed by the worker pool",
)
