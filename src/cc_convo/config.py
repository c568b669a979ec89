"""cc-convo configuration, read from the environment."""

import os
from pathlib import Path


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value:
        return default
    return Path(value).expanduser()


def _env_delays(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        delays = tuple(float(part) for part in value.split(",") if part.strip())
    except ValueError:
        return default
    if any(d < 0 for d in delays):
        return default
    return delays


def _env_level(name: str, default: str) -> str:
    value = os.getenv(name, default).strip().upper()
    if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        return default
    return value


# Where the agent runtime keeps per-workspace session directories
PROJECTS_DIR = _env_path("CC_CONVO_PROJECTS_DIR", Path.home() / ".claude" / "projects")

# Backoff (seconds) between attempts to read a background subagent's final
# result from its side-log, after the first immediate attempt
ASYNC_RESULT_RETRY_DELAYS = _env_delays("CC_CONVO_RETRY_DELAYS", (0.2, 0.6, 1.5))

LOG_LEVEL = _env_level("CC_CONVO_LOG_LEVEL", "WARNING")
