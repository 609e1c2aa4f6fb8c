from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime, ForeignKey
from models.base import Base, TimestampMixin, new_uuid

class AssessmentResult(Base, TimestampMixin):
    __tablename__ = "assessment_results"

    id = Column(String(36), primary_key=True, default=new_uuid)
    session_id = Column(String(36), ForeignKey("assessment_sessions.id"), unique=True, nullable=False)
    assessment_id = Column(String(36), ForeignKey("assessments.id"), index=True, nullable=False)
    user_id = Column(String(64), index=True, nullable=False)

    score = Column(Integer, nullable=False)
    total_points = Column(Integer, nullable=False)
    percentage = Column(Integer, nullable=False)
    passed = Column(Boolean, nullable=False)
    question_results = Column(JSON, nullable=False)
    time_taken_seconds = Column(Integer, nullable=False)
    completed_at = Column(DateTime, nullable=False)

    # Integrity summary carried from the session
    tab_switches_count = Column(Integer, default=0, nullable=False)
    clipboard_violations_count = Column(Integer, default=0, nullable=False)
    proctoring_flags = Column(JSON, nullable=True)
    knockout = Column(Boolean, default=False, nullable=False)
