"""
Durable local snapshot of the alert list.

Restored at session start as a pull result stamped with its write time, so
anything the server says afterwards (push or fresh pull) replaces it.
"""

import os
import tempfile
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, ValidationError

from vitalsync.domain.models import AlertRecord, UtcDatetime, utcnow

logger = structlog.get_logger(__name__)


class PersistedSnapshot(BaseModel):
    written_at: UtcDatetime = Field(default_factory=utcnow)
    alerts: list[AlertRecord] = Field(default_factory=list)


class LocalAlertStore:
    """JSON file holding the last known active alerts."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.logger = logger.bind(component="local_alert_store", path=str(self.path))

    def save(self, alerts: list[AlertRecord], written_at: datetime | None = None) -> None:
        snapshot = PersistedSnapshot(written_at=written_at or utcnow(), alerts=alerts)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a crash never leaves a truncated file behind
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(snapshot.model_dump_json(indent=2))
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self.logger.debug("alert_snapshot_saved", alerts=len(alerts))

    def load(self) -> PersistedSnapshot | None:
        """The stored snapshot, or None when there is none or it cannot be read."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.warning("alert_snapshot_unreadable", error=str(e))
            return None

        try:
            return PersistedSnapshot.model_validate_json(raw)
        except ValidationError as e:
            self.logger.warning("alert_snapshot_corrupt", error=str(e))
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
