"""Alert sink interfaces for terminal job failures.

Alerts are fire-and-forget: a sink reports delivery problems through its
return value and the log, and never raises into the failure handler.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    """A critical event worth waking someone up for."""
    title: str
    details: dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }


class AlertSink(ABC):
    """Destination for alerts."""

    @abstractmethod
    async def send_alert(self, alert: Alert) -> bool:
        """Deliver an alert. Returns True if it was delivered."""
        pass

    async def close(self) -> None:
        """Release resources held by the sink."""
        return None


class LoggingAlertSink(AlertSink):
    """Writes alerts to the log at CRITICAL level. Always enabled."""

    async def send_alert(self, alert: Alert) -> bool:
        logger.critical(
            f"[CRITICAL ALERT] {alert.title}\n"
            f"{json.dumps(alert.details, indent=2, default=str)}"
        )
        return True


class CompositeAlertSink(AlertSink):
    """Fans an alert out to several sinks."""

    def __init__(self, sinks: Sequence[AlertSink]):
        self.sinks = list(sinks)

    async def send_alert(self, alert: Alert) -> bool:
        """Deliver to every sink; True if at least one succeeded."""
        delivered = False
        for sink in self.sinks:
            try:
                delivered = await sink.send_alert(alert) or delivered
            except Exception as e:
                logger.error(f"Alert sink {type(sink).__name__} failed: {e}")
        return delivered

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()
