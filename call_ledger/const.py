"""Constants for the call ledger."""

from enum import StrEnum
from typing import Final

# Network configuration
DEFAULT_REQUEST_TIMEOUT: Final = 10.0  # seconds

# Timing constants (seconds)
POLLING_FALLBACK_INTERVAL: Final = 5
TOP_RECORD_CHECK_INTERVAL: Final = 2
CLEANUP_INTERVAL: Final = 300  # 5 minutes

# Reconciliation heuristics
ANSWER_MATCH_WINDOW_MINUTES: Final = 60
MAX_RECONCILE_CANDIDATES: Final = 3

# Recent-call window
RECENT_WINDOW_HORIZON_HOURS: Final = 2
RECENT_WINDOW_MAX_ENTRIES: Final = 10

# In-memory caps (swept periodically)
MAX_ACTIVE_RECORDS: Final = 200
MAX_PROCESSED_INDEXES: Final = 500
MAX_SENT_RECORDS: Final = 500
MAX_PROCESSED_ANSWERS: Final = 500
PROCESSED_ANSWER_RETENTION_HOURS: Final = 6

# Persisted caps
PERSIST_MAX_RECORDS: Final = 100
PERSIST_MAX_INDEXES: Final = 300
PERSIST_MAX_SENT_RECORDS: Final = 50
PERSIST_MAX_PROCESSED_ANSWERS: Final = 50

# Storage
STORAGE_VERSION: Final = 1
STORAGE_KEY: Final = "missed_calls"
DEFAULT_STORAGE_PATH: Final = ".call_ledger/missed_calls.json"

# Stats
PROCESSING_TIME_HISTORY: Final = 20
SLOW_PROCESSING_THRESHOLD_MS: Final = 200

# Row text markers (from the live view)
MISSED_CALL_MARKER: Final = "Missed call"
ANSWERED_CALL_MARKERS: Final = ("Incoming call answered by", "Incoming call")

# Sink payload values
SINK_SOURCE_MONITOR: Final = "Real-time Monitor"
SINK_SOURCE_ANSWERED: Final = "Call answered at {}"
ACTUAL_MISSED_YES: Final = "Yes"
ACTUAL_MISSED_NO: Final = "No"

# Configuration keys
CONF_SINK_URL: Final = "sink_url"
CONF_REQUEST_TIMEOUT: Final = "request_timeout"
CONF_POLL_INTERVAL: Final = "poll_interval"
CONF_TOP_CHECK_INTERVAL: Final = "top_check_interval"
CONF_CLEANUP_INTERVAL: Final = "cleanup_interval"
CONF_ANSWER_MATCH_MINUTES: Final = "answer_match_minutes"
CONF_MAX_CANDIDATES: Final = "max_reconcile_candidates"
CONF_WINDOW_HORIZON_HOURS: Final = "window_horizon_hours"
CONF_WINDOW_MAX_ENTRIES: Final = "window_max_entries"
CONF_MAX_RECORDS: Final = "max_records"
CONF_MAX_INDEXES: Final = "max_processed_indexes"
CONF_STORAGE_PATH: Final = "storage_path"
CONF_IGNORE_BEFORE_START: Final = "ignore_calls_before_start"
CONF_RESUME_STATE: Final = "resume_state"


class CallKind(StrEnum):
    """Call event kinds recognised in the live view."""

    MISSED = "missed"
    ANSWERED = "answered"


class RecordState(StrEnum):
    """Reconciliation states of a durable call record."""

    MISSED_PENDING = "missed_pending"
    RECLASSIFIED_ANSWERED = "reclassified_answered"


class DeliveryKind(StrEnum):
    """Outbound delivery types."""

    CREATE = "create"
    UPDATE = "update"


class MonitorState(StrEnum):
    """Coarse monitor status exposed to the user."""

    STOPPED = "stopped"
    RUNNING = "running"
