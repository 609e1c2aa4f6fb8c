from sqlalchemy import Column, Integer, String, Text, ForeignKey, Boolean, JSON, DateTime, Index, UniqueConstraint
from models.base import Base, TimestampMixin, new_uuid

class AssessmentSession(Base, TimestampMixin):
    __tablename__ = "assessment_sessions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    assessment_id = Column(String(36), ForeignKey("assessments.id"), index=True, nullable=False)
    user_id = Column(String(64), index=True, nullable=False)

    current_question_index = Column(Integer, default=0, nullable=False)
    time_remaining_seconds = Column(Integer, nullable=False)
    review_marks = Column(JSON, nullable=True)

    # Integrity
    tab_switches = Column(Integer, default=0, nullable=False)
    clipboard_violations = Column(Integer, default=0, nullable=False)
    proctoring_violations = Column(JSON, nullable=True)
    knockout = Column(Boolean, default=False, nullable=False)

    # Pause bookkeeping
    is_paused = Column(Boolean, default=False, nullable=False)
    paused_at = Column(DateTime, nullable=True)
    pause_reason = Column(String(255), nullable=True)

    completed = Column(Boolean, default=False, nullable=False)
    started_at = Column(DateTime, nullable=False)
    last_activity_at = Column(DateTime, nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    # NULL while completed => submission in progress
    result_id = Column(String(36), nullable=True)


# One active (non-completed) session per candidate and assessment
Index(
    "uq_active_session",
    AssessmentSession.assessment_id,
    AssessmentSession.user_id,
    unique=True,
    postgresql_where=AssessmentSession.completed.is_(False),
    sqlite_where=AssessmentSession.completed.is_(False),
)


class SessionAnswer(Base, TimestampMixin):
    __tablename__ = "session_answers"
    __table_args__ = (UniqueConstraint("session_id", "question_id", name="uq_session_question"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("assessment_sessions.id"), index=True, nullable=False)
    question_id = Column(String(36), nullable=False)
    kind = Column(String(10), nullable=False)  # choice, text, code
    answer = Column(Text, nullable=False)
