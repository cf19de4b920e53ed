"""
Usage tracking hook, notified once per successfully completed owned job.
Billing and quota math live with whoever implements UsageTracker.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from transcriber.core.models import utc_now

logger = logging.getLogger(__name__)


class UsageTracker(Protocol):
    def track(self, user_id: str, duration_seconds: float, tracking_mode: str) -> None:
        ...


@dataclass
class UsageEvent:
    user_id: str
    duration_seconds: float
    tracking_mode: str
    minutes_used: int
    created_at: datetime = field(default_factory=utc_now)


class LoggingUsageTracker:
    """Default tracker: logs each event and keeps it in memory."""

    def __init__(self):
        self.events: list[UsageEvent] = []

    def track(self, user_id: str, duration_seconds: float, tracking_mode: str) -> None:
        event = UsageEvent(
            user_id=user_id,
            duration_seconds=duration_seconds,
            tracking_mode=tracking_mode,
            minutes_used=math.ceil(duration_seconds / 60),
        )
        self.events.append(event)
        logger.info("Usage: user=%s %.1fs (%d min, %s)",
                    user_id, duration_seconds, event.minutes_used, tracking_mode)
