"""Read a persisted session log into typed raw entries."""

import json
import logging
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from .models import LogReadResult, RawEntry

logger = logging.getLogger(__name__)

# Collaborator read function: text of the log, or None when it does not exist yet
ReadFn = Callable[[str], Awaitable[str | None]]


def parse_log(text: str) -> LogReadResult:
    """Parse JSONL text. Malformed lines are skipped and counted, never fatal."""
    entries: list[RawEntry] = []
    skipped = 0
    for line_num, line in enumerate(text.splitlines(), 1):
        if not line.strip():
            continue
        try:
            entries.append(RawEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError) as e:
            skipped += 1
            logger.debug("Skipping malformed entry at line %d: %s", line_num, e)
    return LogReadResult(entries=entries, skipped_lines=skipped)


async def read_log(key: str, read: ReadFn) -> LogReadResult:
    """Read and parse the log identified by ``key``.

    A missing log is an empty conversation. A log that exists but cannot be
    read is reported through ``error`` so callers can tell the two apart.
    """
    try:
        text = await read(key)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read session log %s: %s", key, e)
        return LogReadResult(error=str(e))

    if text is None:
        return LogReadResult()

    result = parse_log(text)
    if result.skipped_lines:
        logger.info("Skipped %d malformed lines in %s", result.skipped_lines, key)
    return result
