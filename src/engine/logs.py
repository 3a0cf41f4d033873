# src/engine/logs.py
"""
Typed execution log entries and the versioned blob stored on ScanJob.execution_log.

Stored form (version 1):
    {"version": 1, "entries": [{"timestamp": "...", "stream": "stdout", "content": "..."}]}

A bare list is accepted on read for records written before the blob was versioned;
those entries used "type" instead of "stream".
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from engine.models import utcnow

LOG_BLOB_VERSION = 1
MAX_LOG_ENTRIES = 20000
STDOUT = "stdout"
STDERR = "stderr"


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    stream: str
    content: str

    @classmethod
    def now(cls, stream: str, content: str) -> "LogEntry":
        return cls(timestamp=utcnow(), stream=stream, content=content)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat() + "Z",
            "stream": self.stream,
            "content": self.content,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LogEntry":
        stream = data.get("stream") or data.get("type") or STDOUT
        return cls(
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
            stream=stream if stream in (STDOUT, STDERR) else STDOUT,
            content=str(data.get("content", "")),
        )


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an RFC3339 timestamp into a naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text.replace(" ", "T", 1))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def decode_log(blob) -> List[LogEntry]:
    if not blob:
        return []
    if isinstance(blob, dict):
        version = blob.get("version")
        if version != LOG_BLOB_VERSION:
            logging.warning(f"Unknown execution log version {version}, reading entries as-is")
        raw_entries = blob.get("entries") or []
    elif isinstance(blob, list):
        raw_entries = blob
    else:
        logging.warning(f"Unreadable execution log of type {type(blob).__name__}, starting empty")
        return []
    return [LogEntry.from_dict(e) for e in raw_entries if isinstance(e, dict)]


def encode_log(entries: Iterable[LogEntry]) -> dict:
    return {"version": LOG_BLOB_VERSION, "entries": [e.to_dict() for e in entries]}


def cap_entries(entries: List[LogEntry], limit: int = MAX_LOG_ENTRIES) -> List[LogEntry]:
    """Keep the most recent `limit` entries, oldest evicted first."""
    if len(entries) > limit:
        return entries[len(entries) - limit:]
    return entries
