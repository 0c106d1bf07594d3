"""Operational statistics for the gateway.

Lightweight in-memory counters with a snapshot for the dashboard.

Notes
-----
- Counters reset on process restart.
- Not evidence of anything. Alerts and the access log are the records.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    requests_total: int = 0
    requests_by_outcome: Dict[str, int] = field(default_factory=dict)
    requests_by_status: Dict[str, int] = field(default_factory=dict)

    rejections_total: int = 0
    rejections_by_outcome: Dict[str, int] = field(default_factory=dict)

    alerts_total: int = 0
    alerts_by_category: Dict[str, int] = field(default_factory=dict)

    store_errors_total: int = 0
    sink_errors_total: int = 0
    unbans_total: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_request(self, status: int, outcome: str) -> None:
        with self._lock:
            self._c.requests_total += 1
            self._inc_map(self._c.requests_by_outcome, outcome or "unknown")
            self._inc_map(self._c.requests_by_status, str(status))

    def record_rejection(self, outcome: str) -> None:
        with self._lock:
            self._c.rejections_total += 1
            self._inc_map(self._c.rejections_by_outcome, outcome or "unknown")

    def record_alert(self, category: str) -> None:
        with self._lock:
            self._c.alerts_total += 1
            self._inc_map(self._c.alerts_by_category, category or "unknown")

    def record_store_error(self) -> None:
        with self._lock:
            self._c.store_errors_total += 1

    def record_sink_error(self) -> None:
        with self._lock:
            self._c.sink_errors_total += 1

    def record_unban(self) -> None:
        with self._lock:
            self._c.unbans_total += 1

    def reset(self) -> None:
        with self._lock:
            self._c = _Counters()
            self._start_monotonic = time.monotonic()

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "requests_total": c.requests_total,
                "requests_by_outcome": dict(c.requests_by_outcome),
                "requests_by_status": dict(c.requests_by_status),
                "rejections_total": c.rejections_total,
                "rejections_by_outcome": dict(c.rejections_by_outcome),
                "alerts_total": c.alerts_total,
                "alerts_by_category": dict(c.alerts_by_category),
                "store_errors_total": c.store_errors_total,
                "sink_errors_total": c.sink_errors_total,
                "unbans_total": c.unbans_total,
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
