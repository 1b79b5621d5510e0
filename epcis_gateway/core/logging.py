import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Default log file path: <repo_root>/logs/events.jsonl
LOG_FILE_PATH = Path(__file__).resolve().parents[2] / "logs" / "events.jsonl"


def get_logger(name: str = "epcis-gateway") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        # Avoid duplicate handlers in reload mode
        return logger

    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

    # Console handler (shows in terminal)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    return logger


def _log_file_path() -> Optional[Path]:
    """
    EVENT_LOG_PATH overrides the JSONL destination; an empty value disables the file.
    """
    override = os.getenv("EVENT_LOG_PATH")
    if override is None:
        return LOG_FILE_PATH
    override = override.strip()
    return Path(override) if override else None


def log_event(
    logger: logging.Logger,
    event_name: str,
    fields: Dict[str, Any],
    level: int = logging.INFO,
) -> None:
    """
    Emit one structured record. Never pass secrets or signature values in fields.
    """
    record = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event_name,
        **fields,
    }

    line = json.dumps(record, default=str)

    # 1) Emit to terminal (stdout)
    logger.log(level, line)

    # 2) Persist to JSONL file for ops/reporting
    path = _log_file_path()
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(line + "\n")
