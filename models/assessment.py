from sqlalchemy import Column, Integer, String, Text, JSON, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, TimestampMixin, new_uuid

class Assessment(Base, TimestampMixin):
    __tablename__ = "assessments"

    id = Column(String(36), primary_key=True, default=new_uuid)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    passing_score = Column(Integer, default=70, nullable=False)  # percent
    is_active = Column(Boolean, default=True, nullable=False)

    # Proctoring flags
    timer_enabled = Column(Boolean, default=True, nullable=False)
    auto_submit_on_timeout = Column(Boolean, default=True, nullable=False)
    tab_switch_detection = Column(Boolean, default=True, nullable=False)
    max_tab_switches = Column(Integer, default=3, nullable=False)
    face_detection_enabled = Column(Boolean, default=False, nullable=False)
    grace_period_seconds = Column(Integer, default=10, nullable=False)
    submit_on_knockout = Column(Boolean, default=False, nullable=False)

    questions = relationship(
        "AssessmentQuestion",
        back_populates="assessment",
        order_by="AssessmentQuestion.order_index",
    )


class AssessmentQuestion(Base, TimestampMixin):
    __tablename__ = "assessment_questions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    assessment_id = Column(String(36), ForeignKey("assessments.id"), index=True, nullable=False)
    question_text = Column(Text, nullable=False)
    question_type = Column(String(20), default="single_choice", nullable=False)  # single_choice, code
    options = Column(JSON, nullable=True)
    # Never serialized to the candidate-facing read path
    correct_answer = Column(Text, nullable=True)
    points = Column(Integer, default=1, nullable=False)
    order_index = Column(Integer, default=0, nullable=False)
    starter_code = Column(Text, nullable=True)

    assessment = relationship("Assessment", back_populates="questions")
