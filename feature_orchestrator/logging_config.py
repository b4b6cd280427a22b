"""Structured logging setup: console + JSON-lines file."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import OrchestratorConfig

# Optional `extra=` keys copied into JSON records when present.
CONTEXT_FIELDS = ("feature", "issue", "agent_id")


class JSONFormatter(logging.Formatter):
    """JSON Lines format for structured log files."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logger(config: OrchestratorConfig) -> logging.Logger:
    """Create a logger with console and optional JSON-lines file handlers."""
    logger = logging.getLogger("orchestrator")
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    # Don't add handlers if already configured (avoids duplicates on re-init)
    if logger.handlers:
        return logger

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    ))
    logger.addHandler(console)

    if config.structured_log:
        log_dir = config.resolve(config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"run-{datetime.now().strftime('%Y%m%d-%H%M%S')}.jsonl"
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    return logger
