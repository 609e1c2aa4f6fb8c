"""
engine/state.py

In-memory model of one proctored assessment attempt.

`SessionState` is the single source of truth for a live session: the timer,
the collector and the integrity monitor all mutate the same instance, and the
autosave driver flushes it. Every mutation bumps `revision`; a successful
flush records the revision it captured, so `is_dirty` is simply
`revision != flushed_revision`.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator


class QuestionType(str, Enum):
    SINGLE_CHOICE = "single_choice"
    CODE = "code"


class AnswerKind(str, Enum):
    CHOICE = "choice"
    TEXT = "text"
    CODE = "code"


class Answer(BaseModel):
    """Tagged answer value submitted by the candidate."""
    model_config = ConfigDict(frozen=True)

    kind: AnswerKind
    value: str

    @property
    def is_blank(self) -> bool:
        return not self.value.strip()


class QuestionView(BaseModel):
    """Candidate-facing question. Carries no correct-answer data."""
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    question_type: QuestionType = QuestionType.SINGLE_CHOICE
    options: List[str] = Field(default_factory=list)
    points: int = Field(1, ge=0)
    order_index: int = 0
    starter_code: Optional[str] = None


class ScoringKey(BaseModel):
    """Trusted per-question scoring data. Only the scoring pipeline reads it."""
    model_config = ConfigDict(frozen=True)

    question_id: str
    question_type: QuestionType = QuestionType.SINGLE_CHOICE
    correct_answer: Optional[str] = None
    points: int = Field(1, ge=0)
    order_index: int = 0


class AssessmentConfig(BaseModel):
    """Immutable per-attempt assessment settings."""
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    duration_seconds: int = Field(..., gt=0)
    pass_threshold: int = Field(70, ge=0, le=100)
    questions: List[QuestionView] = Field(default_factory=list)

    timer_enabled: bool = True
    auto_submit_on_timeout: bool = True
    tab_switch_detection: bool = True
    max_tab_switches: int = Field(3, ge=1)
    face_detection_enabled: bool = False
    grace_period_seconds: int = Field(10, ge=0)
    submit_on_knockout: bool = False

    @field_validator("questions")
    @classmethod
    def _order_questions(cls, questions):
        return sorted(questions, key=lambda q: q.order_index)

    @property
    def question_ids(self) -> List[str]:
        return [q.id for q in self.questions]

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    def has_question(self, question_id: str) -> bool:
        return any(q.id == question_id for q in self.questions)


class ViolationKind(str, Enum):
    TAB_SWITCH = "tab_switch"
    COPY = "copy"
    CUT = "cut"
    PASTE = "paste"
    NO_FACE = "no_face"
    CAMERA_DENIED = "camera_denied"


class ViolationEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ViolationKind
    message: str
    at: datetime

    def __str__(self) -> str:
        return self.message


class Progress(BaseModel):
    model_config = ConfigDict(frozen=True)

    answered_count: int
    total: int
    unanswered_count: int
    review_count: int
    current_question_index: int


class SessionSnapshot(BaseModel):
    """What autosave writes: a full overwrite of the persisted session row."""
    model_config = ConfigDict(frozen=True)

    current_question_index: int
    time_remaining: int
    answers: Dict[str, Answer]
    review_marks: List[str]
    tab_switch_count: int
    clipboard_violation_count: int
    violations: List[ViolationEntry]
    knockout: bool
    is_paused: bool
    paused_at: Optional[datetime] = None
    pause_reason: Optional[str] = None
    last_activity_at: datetime


class SessionState(BaseModel):
    session_id: str
    assessment_id: str
    user_id: str

    time_remaining: int = Field(..., ge=0)
    current_question_index: int = Field(0, ge=0)

    answers: Dict[str, Answer] = Field(default_factory=dict)
    review_marks: Set[str] = Field(default_factory=set)

    tab_switch_count: int = 0
    clipboard_violation_count: int = 0
    violations: List[ViolationEntry] = Field(default_factory=list)
    knockout: bool = False

    completed: bool = False
    is_paused: bool = False
    paused_at: Optional[datetime] = None
    pause_reason: Optional[str] = None

    created_at: datetime
    last_activity_at: datetime
    submitted_at: Optional[datetime] = None
    result_id: Optional[str] = None

    revision: int = 0
    flushed_revision: int = 0

    @property
    def is_dirty(self) -> bool:
        return self.revision != self.flushed_revision

    def mark_dirty(self):
        self.revision += 1

    def touch(self, now: datetime):
        """Record candidate activity."""
        self.last_activity_at = now
        self.mark_dirty()

    def mark_flushed(self, revision: int):
        if revision > self.flushed_revision:
            self.flushed_revision = revision

    def clamp_time(self, duration_seconds: int):
        self.time_remaining = max(0, min(self.time_remaining, duration_seconds))

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            current_question_index=self.current_question_index,
            time_remaining=self.time_remaining,
            answers=dict(self.answers),
            review_marks=sorted(self.review_marks),
            tab_switch_count=self.tab_switch_count,
            clipboard_violation_count=self.clipboard_violation_count,
            violations=list(self.violations),
            knockout=self.knockout,
            is_paused=self.is_paused,
            paused_at=self.paused_at,
            pause_reason=self.pause_reason,
            last_activity_at=self.last_activity_at,
        )


class IntegritySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    tab_switch_count: int = 0
    clipboard_violation_count: int = 0
    violations: List[str] = Field(default_factory=list)
    knockout: bool = False


class QuestionOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    answer: Optional[Answer] = None
    is_correct: bool = False
    points_earned: int = 0
    max_points: int = 0
    pending_manual_review: bool = False


class Result(BaseModel):
    """Scored outcome of a completed session. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    assessment_id: str
    user_id: str
    score: int
    total_points: int
    percentage: int
    passed: bool
    breakdown: List[QuestionOutcome]
    time_taken_seconds: int
    completed_at: datetime
    integrity: IntegritySummary
    id: Optional[str] = None
