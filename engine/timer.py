from datetime import datetime
from enum import Enum
from typing import Optional

from core.config import settings
from core.logger import logger
from engine.state import AssessmentConfig, SessionState


class TimerPhase(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EXPIRED = "expired"


def format_remaining(seconds: int) -> str:
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class SessionTimer:
    """Countdown over `SessionState.time_remaining`."""

    def __init__(self, state: SessionState, assessment: AssessmentConfig):
        self.state = state
        self.assessment = assessment
        self.state.clamp_time(assessment.duration_seconds)

    @property
    def enabled(self) -> bool:
        return self.assessment.timer_enabled

    @property
    def running(self) -> bool:
        return (
            self.enabled
            and not self.state.completed
            and not self.state.is_paused
            and self.state.time_remaining > 0
        )

    @property
    def expired(self) -> bool:
        return self.enabled and self.state.time_remaining <= 0

    def tick(self, seconds: int = 1) -> bool:
        """
        Consume `seconds` of the countdown.

        Returns True only on the tick that reaches zero, so the caller
        triggers the timeout path exactly once.
        """
        if seconds <= 0 or not self.running:
            return False

        self.state.time_remaining = max(0, self.state.time_remaining - seconds)
        self.state.mark_dirty()

        if self.state.time_remaining == 0:
            logger.info("Session timer expired", session_id=self.state.session_id)
            return True
        return False

    def pause(self, now: datetime, reason: Optional[str] = None) -> bool:
        if self.state.completed or self.state.is_paused:
            return False
        self.state.is_paused = True
        self.state.paused_at = now
        self.state.pause_reason = reason
        self.state.touch(now)
        logger.info("Session paused", session_id=self.state.session_id, reason=reason)
        return True

    def resume(self, now: datetime) -> bool:
        if self.state.completed or not self.state.is_paused:
            return False
        self.state.is_paused = False
        self.state.paused_at = None
        self.state.pause_reason = None
        self.state.touch(now)
        logger.info("Session resumed from pause", session_id=self.state.session_id)
        return True

    @property
    def phase(self) -> TimerPhase:
        if not self.enabled:
            return TimerPhase.NORMAL
        if self.expired:
            return TimerPhase.EXPIRED
        percent = self.state.time_remaining * 100 / self.assessment.duration_seconds
        if percent <= settings.TIMER_CRITICAL_PERCENT:
            return TimerPhase.CRITICAL
        if percent <= settings.TIMER_WARNING_PERCENT:
            return TimerPhase.WARNING
        return TimerPhase.NORMAL

    def format_remaining(self) -> str:
        return format_remaining(self.state.time_remaining)
