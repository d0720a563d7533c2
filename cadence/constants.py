"""Shared constants for cadence."""

DEFAULT_HOME = "~/.cadence"
SESSIONS_DIRNAME = "sessions"

WORKFLOW_DOCUMENT = "workflow.json"
LOOP_DOCUMENT = "loop.json"
TIMELINE_DOCUMENT = "timeline.jsonl"
TIMELINE_COUNTER = "timeline.count"
LOCK_FILE = ".lock"

DEFAULT_MAX_EVENTS = 2000
DEFAULT_TRIM_INTERVAL = 100
DEFAULT_MAX_CONFLICT_RETRIES = 5
DEFAULT_LOCK_TIMEOUT = 5.0

STAGE_KEY_SEPARATOR = ":"
