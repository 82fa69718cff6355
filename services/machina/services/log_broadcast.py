"""In-process fan-out of deployment log lines to live subscribers.

The registry is owned by the deployment orchestrator. Delivery is
synchronous and in registration order; there is no buffering or replay, so a
subscriber only sees lines published after it registered. Durable history
lives in the deployment record.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from machina.db.models import LogLevel, LogSource, utc_now
from machina.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class LogEvent:
    """One deployment log line."""

    deployment_id: str
    level: LogLevel
    source: LogSource
    message: str
    timestamp: datetime

    @classmethod
    def now(cls, deployment_id: str, level: LogLevel, source: LogSource, message: str) -> "LogEvent":
        return cls(deployment_id, level, source, message, utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "timestamp": self.timestamp.isoformat(),
            "level": str(self.level),
            "source": str(self.source),
            "message": self.message,
        }


LogSubscriber = Callable[[LogEvent], None]


class LogBroadcastRegistry:
    """Map of deployment id to an ordered list of subscriber callbacks."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[LogSubscriber]] = {}

    def register(self, deployment_id: str, callback: LogSubscriber) -> None:
        self._subscribers.setdefault(deployment_id, []).append(callback)

    def unregister(self, deployment_id: str, callback: LogSubscriber) -> None:
        """Remove the first matching callback. Unknown ids or callbacks are ignored."""
        callbacks = self._subscribers.get(deployment_id)
        if not callbacks:
            return
        try:
            callbacks.remove(callback)
        except ValueError:
            return
        if not callbacks:
            del self._subscribers[deployment_id]

    def subscriber_count(self, deployment_id: str) -> int:
        return len(self._subscribers.get(deployment_id, ()))

    def publish(self, deployment_id: str, event: LogEvent) -> None:
        # Snapshot so a callback may unregister itself mid-delivery
        for callback in list(self._subscribers.get(deployment_id, ())):
            try:
                callback(event)
            except Exception as e:
                logger.warning(
                    "Log subscriber failed",
                    deployment_id=deployment_id,
                    error=str(e),
                )
