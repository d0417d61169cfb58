# ============================================================================
# FILENAME: config.py
# PURPOSE: Default configuration values for the sflflow execution engine
# ============================================================================
# SECTION 1: Worker & Queue Configuration
# ============================================================================
#
# Number of jobs processed concurrently by one worker pool
WORKER_CONCURRENCY = 5

# Attempts per job before it is terminally failed
MAX_JOB_ATTEMPTS = 3

# Base delay (seconds) of the exponential backoff between attempts
BACKOFF_BASE_DELAY = 2.0

# Upper bound (seconds) for a single task, including its external calls
TASK_TIMEOUT = 120

# Seconds a worker blocks on the broker before re-checking for shutdown
QUEUE_POLL_INTERVAL = 1.0

# Retention of terminal jobs (keep last N of each status)
KEEP_COMPLETED_JOBS = 10
KEEP_FAILED_JOBS = 50

# A processing job whose lease is not refreshed within LEASE_TTL seconds is
# treated as abandoned and requeued by the next worker process to start
LEASE_TTL = 30.0
LEASE_HEARTBEAT_INTERVAL = 10.0

# Queue (and Redis key prefix) name
QUEUE_NAME = "workflow-execution"
#
# ============================================================================
# SECTION 2: Task Configuration
# ============================================================================
#
DEFAULT_MODEL = "gemini-2.5-flash"

# Delay used by SIMULATE_PROCESS tasks
SIMULATE_PROCESS_DELAY = 1.0

# Interpreter step budget for TEXT_MANIPULATION function bodies
FUNCTION_STEP_LIMIT = 100_000

#
# ============================================================================
# SECTION 3: Server Configuration
# ============================================================================
#
SERVER_HOST = "127.0.0.1"
SERVER_PORT = 9102
#
# ============================================================================
# SECTION 4: Logging Configuration
# ============================================================================
#
LOG_CONFIG = {
    "handlers": {
        "file": {
            "level": "DEBUG",
            "rotation": "10 MB",
            "retention": "30 days",
        }
    },
    "formatters": {
        "default": {
            "format": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"
        }
    }
}

#
#
## END config.py
