"""
Pytest configuration and fixtures for the assessment engine tests.
"""
import sys
import os
import asyncio
import copy
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("AUTH_SECRET", "test-secret")

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

from core.clock import utcnow
from core.config import settings
from core.exceptions import PersistenceError
from engine.state import (
    Answer,
    AnswerKind,
    AssessmentConfig,
    QuestionType,
    QuestionView,
    Result,
    ScoringKey,
    SessionSnapshot,
    SessionState,
)
from services.persistence import PersistenceGateway
from services.task_manager import runtime_registry


class MemoryGateway(PersistenceGateway):
    """In-memory store. `fail(method, times)` makes the next calls raise PersistenceError."""

    def __init__(self, assessments=None, answer_keys=None):
        self.assessments: Dict[str, AssessmentConfig] = {a.id: a for a in assessments or []}
        self.answer_keys: Dict[str, List[ScoringKey]] = dict(answer_keys or {})
        self.sessions: Dict[str, SessionState] = {}
        self.results: Dict[str, Result] = {}
        self.calls = Counter()
        self._failures: Dict[str, int] = {}
        self._next_id = 0

    def fail(self, method: str, times: int = 1):
        self._failures[method] = times

    def _enter(self, method: str):
        self.calls[method] += 1
        if self._failures.get(method, 0) > 0:
            self._failures[method] -= 1
            raise PersistenceError(f"{method} unavailable")

    def add_session(self, state: SessionState) -> SessionState:
        self.sessions[state.session_id] = state.model_copy(deep=True)
        return state

    async def get_assessment(self, assessment_id: str) -> Optional[AssessmentConfig]:
        self._enter("get_assessment")
        return self.assessments.get(assessment_id)

    async def get_question_bank(self, assessment_id: str) -> List[QuestionView]:
        self._enter("get_question_bank")
        assessment = self.assessments.get(assessment_id)
        return list(assessment.questions) if assessment else []

    async def get_answer_key(self, assessment_id: str) -> List[ScoringKey]:
        self._enter("get_answer_key")
        return list(self.answer_keys.get(assessment_id, []))

    async def get_active_session(self, assessment_id: str, user_id: str) -> Optional[SessionState]:
        self._enter("get_active_session")
        for state in self.sessions.values():
            if state.assessment_id == assessment_id and state.user_id == user_id and not state.completed:
                return state.model_copy(deep=True)
        return None

    async def get_session(self, session_id: str) -> Optional[SessionState]:
        self._enter("get_session")
        state = self.sessions.get(session_id)
        return state.model_copy(deep=True) if state else None

    async def create_session(self, assessment_id: str, user_id: str, initial_time_remaining: int) -> SessionState:
        self._enter("create_session")
        for state in self.sessions.values():
            if state.assessment_id == assessment_id and state.user_id == user_id and not state.completed:
                return state.model_copy(deep=True)

        self._next_id += 1
        now = utcnow()
        state = SessionState(
            session_id=f"session-{self._next_id}",
            assessment_id=assessment_id,
            user_id=user_id,
            time_remaining=initial_time_remaining,
            created_at=now,
            last_activity_at=now,
        )
        self.sessions[state.session_id] = state.model_copy(deep=True)
        return state

    async def upsert_session_snapshot(self, session_id: str, snapshot: SessionSnapshot) -> bool:
        self._enter("upsert_session_snapshot")
        stored = self.sessions.get(session_id)
        if stored is None or stored.completed:
            return False
        for field in SessionSnapshot.model_fields:
            setattr(stored, field, copy.deepcopy(getattr(snapshot, field)))
        stored.review_marks = set(snapshot.review_marks)
        return True

    async def mark_session_completed(self, session_id: str, submitted_at: datetime) -> bool:
        self._enter("mark_session_completed")
        stored = self.sessions.get(session_id)
        if stored is None:
            return False
        if not stored.completed:
            stored.completed = True
            stored.submitted_at = submitted_at
        return True

    async def write_result(self, result: Result) -> Result:
        self._enter("write_result")
        existing = self.results.get(result.session_id)
        if existing is not None:
            return existing
        stored = result.model_copy(update={"id": f"result-{result.session_id}"})
        self.results[result.session_id] = stored
        if result.session_id in self.sessions:
            self.sessions[result.session_id].result_id = stored.id
        return stored

    async def get_result(self, session_id: str) -> Optional[Result]:
        self._enter("get_result")
        return self.results.get(session_id)

    async def list_active_sessions(self) -> List[SessionState]:
        self._enter("list_active_sessions")
        return [s.model_copy(deep=True) for s in self.sessions.values() if not s.completed]

    async def list_sessions_missing_result(self) -> List[SessionState]:
        self._enter("list_sessions_missing_result")
        return [
            s.model_copy(deep=True)
            for s in self.sessions.values()
            if s.completed and s.session_id not in self.results
        ]


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)):
        self.current = start
        self.mono = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float):
        self.current += timedelta(seconds=seconds)
        self.mono += seconds


def choice(value: str) -> Answer:
    return Answer(kind=AnswerKind.CHOICE, value=value)


def build_assessment(assessment_id: str, count: int, points: int = 10, **overrides) -> AssessmentConfig:
    questions = [
        QuestionView(
            id=f"{assessment_id}-q{i}",
            text=f"Question {i}",
            options=["A", "B", "C", "D"],
            points=points,
            order_index=i,
        )
        for i in range(1, count + 1)
    ]
    options = dict(duration_seconds=600, pass_threshold=50, questions=questions)
    options.update(overrides)
    return AssessmentConfig(id=assessment_id, title=f"Assessment {assessment_id}", **options)


def build_answer_key(assessment: AssessmentConfig, correct: str = "A") -> List[ScoringKey]:
    return [
        ScoringKey(
            question_id=q.id,
            question_type=q.question_type,
            correct_answer=None if q.question_type == QuestionType.CODE else correct,
            points=q.points,
            order_index=q.order_index,
        )
        for q in assessment.questions
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def choice_answer():
    return choice


@pytest.fixture
def two_question_assessment():
    """Two single-choice questions worth 10 points each, pass threshold 50%."""
    return build_assessment("two", 2)


@pytest.fixture
def five_question_assessment():
    return build_assessment("five", 5, points=1)


@pytest.fixture
def make_assessment():
    return build_assessment


@pytest.fixture
def answer_key_for():
    return build_answer_key


@pytest.fixture
def make_state(clock):
    def _make(assessment: AssessmentConfig, session_id: str = "session-1", user_id: str = "candidate-1", **overrides):
        options = dict(
            session_id=session_id,
            assessment_id=assessment.id,
            user_id=user_id,
            time_remaining=assessment.duration_seconds,
            created_at=clock.now(),
            last_activity_at=clock.now(),
        )
        options.update(overrides)
        return SessionState(**options)
    return _make


@pytest.fixture
def gateway(two_question_assessment, five_question_assessment):
    return MemoryGateway(
        assessments=[two_question_assessment, five_question_assessment],
        answer_keys={
            two_question_assessment.id: build_answer_key(two_question_assessment),
            five_question_assessment.id: build_answer_key(five_question_assessment),
        },
    )


@pytest.fixture
def fast_retries(monkeypatch):
    """No backoff sleeps and a short retry budget."""
    monkeypatch.setattr(settings, "SUBMIT_RETRY_BASE_SECONDS", 0.0)
    monkeypatch.setattr(settings, "SUBMIT_MAX_ATTEMPTS", 3)


@pytest_asyncio.fixture
async def registry():
    yield runtime_registry
    await runtime_registry.stop_all()


@pytest.fixture
def eventually():
    async def _wait(predicate, timeout: float = 2.0):
        async def _poll():
            while not predicate():
                await asyncio.sleep(0.01)
        await asyncio.wait_for(_poll(), timeout)
    return _wait
