from __future__ import annotations

import sys
from loguru import logger

# Extras referenced by the sink format; records that never bound them show "-".
_CONTEXT_FIELDS = ("node", "novel_id", "chapter", "route", "attempt", "cache_key", "input_hash")

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> "
    "| <level>{level:<8}</level> "
    "| node={extra[node]} novel={extra[novel_id]} chapter={extra[chapter]} "
    "route={extra[route]} attempt={extra[attempt]} cache={extra[cache_key]} hash={extra[input_hash]} "
    "| {message}"
)


def _fill_context(record: dict) -> None:
    extra = record["extra"]
    for name in _CONTEXT_FIELDS:
        extra.setdefault(name, "-")


def setup_logging(level: str) -> None:
    """Route all continuity logs to one stderr sink at ``level``."""
    logger.remove()
    logger.configure(patcher=_fill_context)
    logger.add(sys.stderr, level=level.upper(), backtrace=True, diagnose=False, format=_FORMAT)
