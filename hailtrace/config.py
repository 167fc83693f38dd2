"""HAIL trace engine configuration."""
import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default

# Canonical schema
HAIL_VERSION = "hail-1.0.0"

# Logging
LOG_LEVEL = os.getenv("HAILTRACE_LOG_LEVEL", "WARNING").upper()

# Adapter tuning
TITLE_MAX_CHARS = _env_int("HAILTRACE_TITLE_MAX_CHARS", 80)
LINE_NUMBER_SAMPLE_LINES = 5
LINE_NUMBER_MIN_RATIO = 0.6

# Display grouping
FILEREAD_LOOKAHEAD = _env_int("HAILTRACE_FILEREAD_LOOKAHEAD", 5)
SUMMARY_COMMAND_MAX = _env_int("HAILTRACE_SUMMARY_COMMAND_MAX", 30)
SUMMARY_MAX_NAMES = 3

# Observability
OTEL_ENABLED = _env_bool("HAILTRACE_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("HAILTRACE_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("HAILTRACE_OTEL_SERVICE_NAME", "hailtrace")
PROM_PORT = _env_int("HAILTRACE_PROM_PORT", 0)
