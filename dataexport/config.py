"""
Runtime configuration for the export engine, read from environment variables.
Values outside their supported range are clamped with a warning.
"""
import logging
import os
import tempfile

logger = logging.getLogger(__name__)

PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = None, maximum: int = None) -> int:
    raw = os.environ.get(name)
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        logger.warning("[CONFIG] %s=%r is not an integer, using %s", name, raw, default)
        value = default
    if minimum is not None and value < minimum:
        logger.warning("[CONFIG] %s=%s below minimum %s, clamping", name, value, minimum)
        value = minimum
    if maximum is not None and value > maximum:
        logger.warning("[CONFIG] %s=%s above maximum %s, clamping", name, value, maximum)
        value = maximum
    return value


# Scheduler service loop
CHECK_INTERVAL_SECONDS = _env_int("SCHEDULER_CHECK_INTERVAL_SECONDS", 10, 5, 300)
MAX_CONCURRENT_JOBS = _env_int("SCHEDULER_MAX_CONCURRENT_JOBS", 10, 1, 100)
STARTUP_DELAY_SECONDS = _env_int("SCHEDULER_STARTUP_DELAY_SECONDS", 3, 0)

# Circuit breaker
CIRCUIT_BREAKER_THRESHOLD = _env_int("CIRCUIT_BREAKER_THRESHOLD", 10, 1, 100)
CIRCUIT_BREAKER_AUTO_RESUME = _env_bool("CIRCUIT_BREAKER_AUTO_RESUME")
CIRCUIT_BREAKER_COOLDOWN_HOURS = _env_int("CIRCUIT_BREAKER_COOLDOWN_HOURS", 1, 1, 168)
CIRCUIT_BREAKER_SWEEP_SECONDS = _env_int("CIRCUIT_BREAKER_SWEEP_SECONDS", 300, 30)

# Executor
JOB_LOCK_SHARDS = _env_int("JOB_LOCK_SHARDS", 64, 1)
JOB_RETRY_BASE_DELAY_SECONDS = float(os.environ.get("JOB_RETRY_BASE_DELAY_SECONDS", "1.0"))
NOTIFICATION_QUEUE_SIZE = _env_int("NOTIFICATION_QUEUE_SIZE", 1000, 1)
CLEANUP_RETENTION_DAYS = _env_int("CLEANUP_RETENTION_DAYS", 90, 1)
BACKUP_DIR = os.environ.get("BACKUP_DIR", os.path.join(PACKAGE_DIR, "backups"))

# Profile pipeline
DESTINATION_MAX_RETRIES = _env_int("DESTINATION_MAX_RETRIES", 3, 0)
EXPORT_TEMP_DIR = os.environ.get("EXPORT_TEMP_DIR", os.path.join(tempfile.gettempdir(), "dataexport"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
