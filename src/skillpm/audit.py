from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    operation: str
    phase: str
    status: str
    code: str = ""
    message: str = ""
    fields: dict[str, str] = field(default_factory=dict)
    timestamp: str = ""


class AuditLogger:
    """Appends one JSON object per event. Write failures are logged, never raised."""

    def __init__(self, path: Path | None) -> None:
        self.path = Path(path) if path is not None else None

    def log(self, event: AuditEvent) -> None:
        if self.path is None:
            return
        event.timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        data = {k: v for k, v in asdict(event).items() if v not in ("", {})}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(data, sort_keys=True) + "\n")
        except OSError as e:
            logger.warning("audit log write to %s failed: %s", self.path, e)
