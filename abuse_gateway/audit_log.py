"""Append-only records written by the gateway.

Two record types:
- SecurityAlert: written by a gate the instant it escalates
- AccessLogEntry: one per request, written after the status is final

Both go to a RecordSink. Sinks are collaborators of the gates, not part of
the decision logic: a failed write is logged and counted, never turned into
a request failure (see AlertRecorder and AbuseGateway.record_access).

Sinks:
- InMemoryRecordSink: bounded, per-process (default)
- JsonlRecordSink: one JSON object per line in an append-only file
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Generic, List, Optional, TypeVar

from . import metrics
from .ops_stats import OPS_STATS

logger = logging.getLogger("abuse_gateway.audit_log")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Severity(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


ALERT_RATE_LIMIT_EXCEEDED = "Rate Limit Exceeded"
ALERT_BRUTE_FORCE_ATTEMPT = "Brute Force Attempt"
ALERT_UNUSUAL_ACCESS_ORDER = "Unusual Access Order"


@dataclass(frozen=True)
class SecurityAlert:
    identity: str
    category: str
    severity: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityAlert":
        return cls(
            identity=str(data["identity"]),
            category=str(data["category"]),
            severity=str(data["severity"]),
            timestamp=str(data["timestamp"]),
        )


@dataclass(frozen=True)
class AccessLogEntry:
    identity: str
    endpoint: str
    method: str
    status: int
    outcome_reason: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessLogEntry":
        return cls(
            identity=str(data["identity"]),
            endpoint=str(data["endpoint"]),
            method=str(data["method"]),
            status=int(data["status"]),
            outcome_reason=str(data["outcome_reason"]),
            timestamp=str(data["timestamp"]),
        )


R = TypeVar("R", SecurityAlert, AccessLogEntry)


class RecordSink(ABC, Generic[R]):
    """Append-only record sink."""

    @abstractmethod
    def append(self, record: R) -> None:
        """Persist one record."""

    @abstractmethod
    def recent(self, limit: int = 50) -> List[R]:
        """Most recent records, newest first."""

    @abstractmethod
    def delete_for_identity(self, identity: str) -> int:
        """Administrative cleanup tied to an unban. Returns records removed."""


class InMemoryRecordSink(RecordSink[R]):
    def __init__(self, max_records: int = 10000):
        self._lock = threading.Lock()
        self._records: Deque[R] = deque(maxlen=max(1, int(max_records)))

    def append(self, record: R) -> None:
        with self._lock:
            self._records.append(record)

    def recent(self, limit: int = 50) -> List[R]:
        with self._lock:
            items = list(self._records)
        items.reverse()
        return items[: max(0, int(limit))]

    def delete_for_identity(self, identity: str) -> int:
        with self._lock:
            kept = [r for r in self._records if r.identity != identity]
            removed = len(self._records) - len(kept)
            self._records.clear()
            self._records.extend(kept)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class JsonlRecordSink(RecordSink[R]):
    """JSONL file sink.

    Lines are appended and flushed; deletion rewrites the file through a
    temporary file and os.replace so readers never see a partial file.
    Unparseable lines (e.g. a truncated tail after a crash) are skipped.
    """

    def __init__(self, path: str, parse: Callable[[Dict[str, Any]], R]):
        self.path = str(path)
        self._parse = parse
        self._lock = threading.Lock()
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def append(self, record: R) -> None:
        line = json.dumps(record.to_dict(), separators=(",", ":"), sort_keys=True) + "\n"
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()

    def _read_all(self) -> List[R]:
        p = Path(self.path)
        if not p.exists():
            return []
        out: List[R] = []
        with open(p, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(self._parse(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    continue
        return out

    def recent(self, limit: int = 50) -> List[R]:
        with self._lock:
            items = self._read_all()
        items.reverse()
        return items[: max(0, int(limit))]

    def delete_for_identity(self, identity: str) -> int:
        with self._lock:
            items = self._read_all()
            kept = [r for r in items if r.identity != identity]
            removed = len(items) - len(kept)
            if removed == 0:
                return 0
            tmp = f"{self.path}.tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                for r in kept:
                    f.write(json.dumps(r.to_dict(), separators=(",", ":"), sort_keys=True) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
            return removed


def build_alert_sink(path: Optional[str]) -> RecordSink[SecurityAlert]:
    if path:
        return JsonlRecordSink(path, SecurityAlert.from_dict)
    return InMemoryRecordSink()


def build_access_log(path: Optional[str]) -> RecordSink[AccessLogEntry]:
    if path:
        return JsonlRecordSink(path, AccessLogEntry.from_dict)
    return InMemoryRecordSink()


class AlertRecorder:
    """Fire-and-forget alert emission used by the gates."""

    def __init__(self, sink: RecordSink[SecurityAlert]):
        self.sink = sink

    def record(self, identity: str, category: str, severity: Severity) -> SecurityAlert:
        alert = SecurityAlert(
            identity=identity,
            category=category,
            severity=severity.value,
            timestamp=_now_iso(),
        )
        logger.warning("Security alert: %s (%s) for %s", category, severity.value, identity)
        OPS_STATS.record_alert(category)
        metrics.record_alert(category, severity.value)
        try:
            self.sink.append(alert)
        except Exception as e:
            OPS_STATS.record_sink_error()
            logger.warning("Failed to write security alert for %s: %s", identity, e)
        return alert
