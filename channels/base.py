"""
Channel infrastructure shared by outbound adapters.

Provides:
- DeliveryError: internal error hierarchy used to drive the retry policy
- ChannelMetrics: per-channel send/fail/retry/latency tracking

Delivery errors never leave an adapter; public send methods turn them into
a False result so callers only ever see "sent" or "not sent".
"""
from __future__ import annotations

from typing import Any


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class DeliveryError(Exception):
    """Base exception for a failed delivery attempt."""

    def __init__(self, message: str, channel: str = "", status_code: int = 0):
        self.channel = channel
        self.status_code = status_code
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """Upstream rate limiting or 5xx — worth one more attempt."""

    def __init__(self, status_code: int, channel: str = ""):
        super().__init__(f"Transient API error {status_code} on {channel}", channel, status_code)


class PermanentDeliveryError(DeliveryError):
    """Rejected request — retrying the same payload will not help."""

    def __init__(self, status_code: int, channel: str = ""):
        super().__init__(f"API rejected request with {status_code} on {channel}", channel, status_code)


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure, retry, and latency metrics."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.retries: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    def record_retry(self):
        self.retries += 1

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "retries": self.retries,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }
