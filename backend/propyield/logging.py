from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from .config import settings

logger = logging.getLogger(__name__)


@dataclass
class LogEvent:
    event: str
    payload: dict
    timestamp: str


def log_event(event: str, payload: dict, log_path: str | Path | None = None) -> None:
    """Append one domain event to the JSON-lines audit trail."""
    record = LogEvent(event=event, payload=payload, timestamp=datetime.now(timezone.utc).isoformat())
    path = Path(log_path or settings.event_log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a") as handle:
        handle.write(json.dumps(asdict(record), default=str) + "\n")
    logger.debug("event %s recorded", event)
