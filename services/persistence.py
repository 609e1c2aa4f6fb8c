from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from engine.state import AssessmentConfig, QuestionView, Result, ScoringKey, SessionSnapshot, SessionState


class PersistenceGateway(ABC):
    """
    Durable store for sessions, answers and results.

    Implementations raise `core.exceptions.PersistenceError` for any store
    failure, so callers only have one transient error type to handle.
    """

    @abstractmethod
    async def get_assessment(self, assessment_id: str) -> Optional[AssessmentConfig]:
        ...

    @abstractmethod
    async def get_question_bank(self, assessment_id: str) -> List[QuestionView]:
        """Ordered candidate-facing questions, without correct answers."""

    @abstractmethod
    async def get_answer_key(self, assessment_id: str) -> List[ScoringKey]:
        """Trusted scoring data. Only the scoring path may call this."""

    @abstractmethod
    async def get_active_session(self, assessment_id: str, user_id: str) -> Optional[SessionState]:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[SessionState]:
        ...

    @abstractmethod
    async def create_session(self, assessment_id: str, user_id: str, initial_time_remaining: int) -> SessionState:
        """Create a session, or return the existing active one for the pair."""

    @abstractmethod
    async def upsert_session_snapshot(self, session_id: str, snapshot: SessionSnapshot) -> bool:
        """Overwrite the persisted snapshot. False when the session is already completed."""

    @abstractmethod
    async def mark_session_completed(self, session_id: str, submitted_at: datetime) -> bool:
        """One-way transition. False when the session does not exist."""

    @abstractmethod
    async def write_result(self, result: Result) -> Result:
        """Upsert keyed by session id; an existing result is returned unchanged."""

    @abstractmethod
    async def get_result(self, session_id: str) -> Optional[Result]:
        ...

    @abstractmethod
    async def list_active_sessions(self) -> List[SessionState]:
        ...

    @abstractmethod
    async def list_sessions_missing_result(self) -> List[SessionState]:
        """Completed sessions whose result write never landed."""
