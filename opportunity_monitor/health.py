from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from .models import CycleReport

log = logging.getLogger("health")

STALE_WARN_MS = 2 * 60 * 1000
STALE_CRITICAL_MS = 5 * 60 * 1000
ERRORS_PER_HOUR_WARN = 5.0
ERRORS_PER_HOUR_CRITICAL = 10.0


def _now_ms() -> int:
    return int(time.time() * 1000)


def format_uptime(ms: int) -> str:
    minutes = max(0, int(ms)) // 60000
    days, rem = divmod(minutes, 24 * 60)
    hours, mins = divmod(rem, 60)
    return f"{days}d {hours}h {mins}m"


class HealthMonitor:
    def __init__(self, started_at_ms: Optional[int] = None):
        self.started_at_ms = started_at_ms if started_at_ms is not None else _now_ms()
        self.errors = 0
        self.alerts_sent = 0
        self.cycles = 0
        self.last_data_update_ms: Optional[int] = None
        self.last_cycle: Optional[CycleReport] = None

    def record_error(self, n: int = 1) -> None:
        self.errors += n

    def record_alert(self, n: int = 1) -> None:
        self.alerts_sent += n

    def record_data_update(self, ts_ms: Optional[int] = None) -> None:
        self.last_data_update_ms = ts_ms if ts_ms is not None else _now_ms()

    def record_cycle(self, report: CycleReport) -> None:
        self.cycles += 1
        self.last_cycle = report

    def error_rate_per_hour(self, now_ms: Optional[int] = None) -> float:
        now_ms = now_ms if now_ms is not None else _now_ms()
        # uptime floored at one hour
        hours = max((now_ms - self.started_at_ms) / 3_600_000.0, 1.0)
        return self.errors / hours

    def report(self, now_ms: Optional[int] = None) -> Dict[str, Any]:
        now_ms = now_ms if now_ms is not None else _now_ms()
        issues: List[str] = []
        status = "healthy"

        if self.last_data_update_ms is not None:
            age = now_ms - self.last_data_update_ms
            if age > STALE_CRITICAL_MS:
                status = "critical"
                issues.append(f"market data is stale ({age // 1000}s old)")
            elif age > STALE_WARN_MS:
                status = "warning"
                issues.append(f"market data is getting old ({age // 1000}s)")

        rate = self.error_rate_per_hour(now_ms)
        if rate > ERRORS_PER_HOUR_CRITICAL:
            status = "critical"
            issues.append(f"high error rate ({rate:.1f}/h)")
        elif rate > ERRORS_PER_HOUR_WARN:
            if status != "critical":
                status = "warning"
            issues.append(f"elevated error rate ({rate:.1f}/h)")

        return {
            "status": status,
            "issues": issues,
            "uptime": format_uptime(now_ms - self.started_at_ms),
            "errors": self.errors,
            "alerts_sent": self.alerts_sent,
            "cycles": self.cycles,
            "error_rate_per_hour": round(rate, 2),
            "last_data_update_ms": self.last_data_update_ms,
            "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
        }
