"""Persisted transcription history (JSON file, newest first)."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

from voxscribe._types import AggregateResult

logger = logging.getLogger(__name__)


@dataclass
class HistoryItem:
    """One saved transcription."""

    file_path: str
    transcript: str
    raw_data: str
    chunk_info: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    audio_metadata: dict | None = None

    @classmethod
    def from_result(cls, file_path: str, result: AggregateResult) -> "HistoryItem":
        data = result.to_dict()
        return cls(
            file_path=str(file_path),
            transcript=result.transcript,
            raw_data=result.raw_data,
            chunk_info=data["chunk_info"],
            audio_metadata=data["audio_metadata"],
        )


class TranscriptionHistory:
    """History store keeping at most ``retention`` items."""

    def __init__(self, path: Path, retention: int = 10):
        self.path = Path(path)
        self.retention = retention

    def list(self) -> list[HistoryItem]:
        """Load all items, newest first. A missing or corrupt file reads as empty."""
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Could not read history %s: %s", self.path, e)
            return []
        if not isinstance(data, list):
            logger.warning("History file %s is not a list, ignoring", self.path)
            return []

        items = []
        for entry in data:
            try:
                items.append(HistoryItem(**entry))
            except TypeError as e:
                logger.debug("Skipping malformed history entry: %s", e)
        return items

    def save(self, item: HistoryItem) -> None:
        """Prepend an item and truncate to the retention count."""
        items = [item, *self.list()][: self.retention]
        self._write(items)
        logger.info("Saved transcription of %s to history", item.file_path)

    def remove(self, file_path: str, timestamp: float) -> bool:
        """Remove the item matching path and timestamp. Returns True if found."""
        items = self.list()
        kept = [
            i for i in items if not (i.file_path == file_path and i.timestamp == timestamp)
        ]
        if len(kept) == len(items):
            return False
        self._write(kept)
        return True

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info("Cleared transcription history")

    def find_by_name(self, file_name: str) -> HistoryItem | None:
        """Most recent item whose source file has the given base name."""
        for item in self.list():
            if Path(item.file_path).name == file_name:
                return item
        return None

    def _write(self, items: list[HistoryItem]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps([asdict(i) for i in items], indent=2), encoding="utf-8"
        )
        tmp_path.replace(self.path)
