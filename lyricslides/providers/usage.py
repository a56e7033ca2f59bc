"""
Per-provider API usage accounting.

Every HTTP request an adapter sends to a provider is recorded here. The
counters are process-wide and only reset when the process restarts (or
when reset() is called explicitly, e.g. in tests).
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field


# History entries kept per provider
HISTORY_LIMIT = 500


@dataclass
class UsageStats:
    """
    Usage counters for one provider.

    Attributes:
        requests: Total requests sent (monotonically increasing).
        last_used: Unix time of the most recent request.
        history: Most recent requests as {'timestamp', 'model'} dicts.
    """
    requests: int = 0
    last_used: float | None = None
    history: deque = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))

    def as_dict(self) -> dict:
        return {
            "requests": self.requests,
            "last_used": self.last_used,
            "history": list(self.history),
        }


class UsageTracker:
    """Thread-safe collection of UsageStats keyed by provider name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats: dict[str, UsageStats] = {}

    def record(self, provider: str, model: str | None = None) -> None:
        now = time.time()
        with self._lock:
            stats = self._stats.setdefault(provider, UsageStats())
            stats.requests += 1
            stats.last_used = now
            stats.history.append({"timestamp": now, "model": model})

    def get(self, provider: str) -> dict:
        with self._lock:
            return self._stats.get(provider, UsageStats()).as_dict()

    def snapshot(self) -> dict[str, dict]:
        """Copy of all counters as plain dicts."""
        with self._lock:
            return {name: stats.as_dict() for name, stats in self._stats.items()}

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


# Process-wide tracker shared by all adapters unless one is injected
usage_tracker = UsageTracker()
