from typing import Sequence

from engine.state import (
    AnswerKind,
    AssessmentConfig,
    IntegritySummary,
    QuestionOutcome,
    QuestionType,
    QuestionView,
    Result,
    ScoringKey,
    SessionState,
)


def percentage_of(raw: int, total: int) -> int:
    """100 * raw / total rounded half up, 0 when nothing is scorable."""
    if total <= 0:
        return 0
    # Integer form of floor(100 * raw / total + 0.5)
    return (200 * raw + total) // (2 * total)


def _outcome(key: ScoringKey, session: SessionState) -> QuestionOutcome:
    answer = session.answers.get(key.question_id)

    if key.question_type == QuestionType.CODE:
        # No automatic code evaluation; graded by a human later
        return QuestionOutcome(
            question_id=key.question_id,
            answer=answer,
            is_correct=False,
            points_earned=0,
            max_points=key.points,
            pending_manual_review=True,
        )

    is_correct = (
        answer is not None
        and answer.kind == AnswerKind.CHOICE
        and key.correct_answer is not None
        and answer.value == key.correct_answer
    )
    return QuestionOutcome(
        question_id=key.question_id,
        answer=answer,
        is_correct=is_correct,
        points_earned=key.points if is_correct else 0,
        max_points=key.points,
    )


def _unkeyed(question: QuestionView) -> ScoringKey:
    # Missing from the answer key: nothing can match, the points still count toward the total
    return ScoringKey(
        question_id=question.id,
        question_type=question.question_type,
        points=question.points,
        order_index=question.order_index,
    )


def time_taken(session: SessionState, assessment: AssessmentConfig) -> int:
    if assessment.timer_enabled:
        return max(0, assessment.duration_seconds - session.time_remaining)
    end = session.submitted_at or session.last_activity_at
    return max(0, int((end - session.created_at).total_seconds()))


def score(session: SessionState, assessment: AssessmentConfig, answer_key: Sequence[ScoringKey]) -> Result:
    """
    Score a finished session against the trusted answer key.

    Every question of the assessment is scored, answered or not, and the
    breakdown keeps the assessment's question order. Pure: the same frozen
    session always yields an equal Result.
    """
    keys = {k.question_id: k for k in answer_key}
    breakdown = [_outcome(keys.get(q.id) or _unkeyed(q), session) for q in assessment.questions]
    raw = sum(o.points_earned for o in breakdown)
    total = sum(o.max_points for o in breakdown)
    percentage = percentage_of(raw, total)

    return Result(
        session_id=session.session_id,
        assessment_id=session.assessment_id,
        user_id=session.user_id,
        score=raw,
        total_points=total,
        percentage=percentage,
        passed=percentage >= assessment.pass_threshold,
        breakdown=breakdown,
        time_taken_seconds=time_taken(session, assessment),
        completed_at=session.submitted_at or session.last_activity_at,
        integrity=IntegritySummary(
            tab_switch_count=session.tab_switch_count,
            clipboard_violation_count=session.clipboard_violation_count,
            violations=[str(v) for v in session.violations],
            knockout=session.knockout,
        ),
    )
