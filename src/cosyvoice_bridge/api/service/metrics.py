"""Process-wide request counters exposed on ``/healthz``."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass
class RequestCounters:
    """Request accounting shared by every bridged request of one app."""

    request_count: int = 0
    active_requests: int = 0
    completed: int = 0
    last_latency_ms: Optional[float] = None

    def begin(self) -> float:
        self.request_count += 1
        self.active_requests += 1
        return time.monotonic()

    def finish(self, started: float) -> float:
        """Close one request opened by :meth:`begin` and return its latency in ms."""

        self.active_requests = max(0, self.active_requests - 1)
        self.completed += 1
        elapsed_ms = (time.monotonic() - started) * 1000.0
        self.last_latency_ms = elapsed_ms
        return elapsed_ms

    def snapshot(self) -> Dict[str, object]:
        return {
            "request_count": self.request_count,
            "active_requests": self.active_requests,
            "completed": self.completed,
            "last_latency_ms": self.last_latency_ms,
        }
