"""Limits, defaults and well-known keys shared across sagaflow."""

from __future__ import annotations

MAX_PARALLEL_BRANCHES = 10
MAX_ERROR_MESSAGE_LENGTH = 1000
MAX_SIGNAL_NAME_LENGTH = 256
MAX_WORKFLOW_ID_LENGTH = 128
MAX_DISPLAY_NAME_LENGTH = 256

MIN_WORKFLOW_TIMEOUT = 1.0
MAX_WORKFLOW_TIMEOUT = 30 * 24 * 60 * 60.0

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 0.1
DEFAULT_MAX_RETRY_DELAY = 60.0
DEFAULT_SIGNAL_TIMEOUT = 24 * 60 * 60.0
DEFAULT_TIMEOUT_CHECK_INTERVAL = 5 * 60.0
DEFAULT_TIMEOUT_BATCH_SIZE = 100

SIGNAL_METADATA_PREFIX = "signal_"


def signal_metadata_key(signal_name: str) -> str:
    """Metadata key under which a delivered signal payload is stored."""
    return f"{SIGNAL_METADATA_PREFIX}{signal_name}"


class MetadataKeys:
    CANCELLATION_REASON = "cancellation_reason"
    CANCELLED_AT = "cancelled_at"
    FAILURE_REASON = "failure_reason"
    COMPENSATION_FAILURES = "compensation_failures"


class ErrorCodes:
    INVALID_CONFIGURATION = "WORKFLOW_INVALID_CONFIG"
    EXECUTION_TIMEOUT = "WORKFLOW_TIMEOUT"
    CANCELLED = "WORKFLOW_CANCELLED"
    STEP_FAILED = "WORKFLOW_STEP_FAILED"
    STATE_CONFLICT = "WORKFLOW_STATE_CONFLICT"
    NOT_FOUND = "WORKFLOW_NOT_FOUND"
