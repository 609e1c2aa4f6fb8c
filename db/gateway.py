from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.exceptions import PersistenceError
from core.logger import logger
from engine.state import (
    Answer,
    AnswerKind,
    AssessmentConfig,
    IntegritySummary,
    QuestionOutcome,
    QuestionType,
    QuestionView,
    Result,
    ScoringKey,
    SessionSnapshot,
    SessionState,
    ViolationEntry,
)
from models.assessment import Assessment, AssessmentQuestion
from models.result import AssessmentResult
from models.session import AssessmentSession, SessionAnswer
from services.persistence import PersistenceGateway


def _question_view(q: AssessmentQuestion) -> QuestionView:
    return QuestionView(
        id=q.id,
        text=q.question_text,
        question_type=QuestionType(q.question_type),
        # Legacy rows may hold a non-list here
        options=q.options if isinstance(q.options, list) else [],
        points=q.points,
        order_index=q.order_index,
        starter_code=q.starter_code,
    )


def _to_state(row: AssessmentSession, answers: List[SessionAnswer]) -> SessionState:
    return SessionState(
        session_id=row.id,
        assessment_id=row.assessment_id,
        user_id=row.user_id,
        time_remaining=max(0, row.time_remaining_seconds),
        current_question_index=row.current_question_index,
        answers={a.question_id: Answer(kind=AnswerKind(a.kind), value=a.answer) for a in answers},
        review_marks=set(row.review_marks or []),
        tab_switch_count=row.tab_switches,
        clipboard_violation_count=row.clipboard_violations,
        violations=[ViolationEntry.model_validate(v) for v in (row.proctoring_violations or [])],
        knockout=row.knockout,
        completed=row.completed,
        is_paused=row.is_paused,
        paused_at=row.paused_at,
        pause_reason=row.pause_reason,
        created_at=row.started_at,
        last_activity_at=row.last_activity_at,
        submitted_at=row.submitted_at,
        result_id=row.result_id,
    )


def _to_result(rec: AssessmentResult) -> Result:
    return Result(
        id=rec.id,
        session_id=rec.session_id,
        assessment_id=rec.assessment_id,
        user_id=rec.user_id,
        score=rec.score,
        total_points=rec.total_points,
        percentage=rec.percentage,
        passed=rec.passed,
        breakdown=[QuestionOutcome.model_validate(o) for o in rec.question_results],
        time_taken_seconds=rec.time_taken_seconds,
        completed_at=rec.completed_at,
        integrity=IntegritySummary(
            tab_switch_count=rec.tab_switches_count,
            clipboard_violation_count=rec.clipboard_violations_count,
            violations=list(rec.proctoring_flags or []),
            knockout=rec.knockout,
        ),
    )


class SqlAlchemyGateway(PersistenceGateway):
    def __init__(self, session_factory=None):
        if session_factory is None:
            from db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    @asynccontextmanager
    async def _db(self):
        try:
            async with self._session_factory() as db:
                yield db
        except (SQLAlchemyError, OSError) as e:
            logger.error("Persistence gateway error", error=str(e))
            raise PersistenceError(str(e)) from e

    async def _answers(self, db: AsyncSession, session_id: str) -> List[SessionAnswer]:
        result = await db.execute(select(SessionAnswer).filter(SessionAnswer.session_id == session_id))
        return list(result.scalars().all())

    async def _load_state(self, db: AsyncSession, row: AssessmentSession) -> SessionState:
        return _to_state(row, await self._answers(db, row.id))

    async def _active_row(self, db: AsyncSession, assessment_id: str, user_id: str) -> Optional[AssessmentSession]:
        result = await db.execute(
            select(AssessmentSession)
            .filter(
                AssessmentSession.assessment_id == assessment_id,
                AssessmentSession.user_id == user_id,
                AssessmentSession.completed == False,
            )
            .order_by(AssessmentSession.started_at)
        )
        return result.scalars().first()

    async def _questions(self, db: AsyncSession, assessment_id: str) -> List[AssessmentQuestion]:
        result = await db.execute(
            select(AssessmentQuestion)
            .filter(AssessmentQuestion.assessment_id == assessment_id)
            .order_by(AssessmentQuestion.order_index)
        )
        return list(result.scalars().all())

    async def get_assessment(self, assessment_id: str) -> Optional[AssessmentConfig]:
        async with self._db() as db:
            result = await db.execute(select(Assessment).filter(Assessment.id == assessment_id))
            assessment = result.scalar_one_or_none()
            if not assessment:
                return None
            questions = await self._questions(db, assessment_id)

        return AssessmentConfig(
            id=assessment.id,
            title=assessment.title,
            duration_seconds=assessment.duration_minutes * 60,
            pass_threshold=assessment.passing_score,
            questions=[_question_view(q) for q in questions],
            timer_enabled=assessment.timer_enabled,
            auto_submit_on_timeout=assessment.auto_submit_on_timeout,
            tab_switch_detection=assessment.tab_switch_detection,
            max_tab_switches=assessment.max_tab_switches,
            face_detection_enabled=assessment.face_detection_enabled,
            grace_period_seconds=assessment.grace_period_seconds,
            submit_on_knockout=assessment.submit_on_knockout,
        )

    async def get_question_bank(self, assessment_id: str) -> List[QuestionView]:
        async with self._db() as db:
            questions = await self._questions(db, assessment_id)
        return [_question_view(q) for q in questions]

    async def get_answer_key(self, assessment_id: str) -> List[ScoringKey]:
        async with self._db() as db:
            questions = await self._questions(db, assessment_id)
        return [
            ScoringKey(
                question_id=q.id,
                question_type=QuestionType(q.question_type),
                correct_answer=q.correct_answer,
                points=q.points,
                order_index=q.order_index,
            )
            for q in questions
        ]

    async def get_active_session(self, assessment_id: str, user_id: str) -> Optional[SessionState]:
        async with self._db() as db:
            row = await self._active_row(db, assessment_id, user_id)
            if not row:
                return None
            return await self._load_state(db, row)

    async def get_session(self, session_id: str) -> Optional[SessionState]:
        async with self._db() as db:
            result = await db.execute(select(AssessmentSession).filter(AssessmentSession.id == session_id))
            row = result.scalar_one_or_none()
            if not row:
                return None
            return await self._load_state(db, row)

    async def create_session(self, assessment_id: str, user_id: str, initial_time_remaining: int) -> SessionState:
        async with self._db() as db:
            existing = await self._active_row(db, assessment_id, user_id)
            if existing:
                return await self._load_state(db, existing)

            now = utcnow()
            row = AssessmentSession(
                assessment_id=assessment_id,
                user_id=user_id,
                time_remaining_seconds=initial_time_remaining,
                current_question_index=0,
                review_marks=[],
                proctoring_violations=[],
                started_at=now,
                last_activity_at=now,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                # Lost the race against a concurrent create for the same pair
                await db.rollback()
                existing = await self._active_row(db, assessment_id, user_id)
                if not existing:
                    raise
                logger.info("Concurrent session create resolved to existing", session_id=existing.id)
                return await self._load_state(db, existing)

            await db.refresh(row)
            logger.info("Assessment session created", session_id=row.id, assessment_id=assessment_id, user_id=user_id)
            return _to_state(row, [])

    async def upsert_session_snapshot(self, session_id: str, snapshot: SessionSnapshot) -> bool:
        async with self._db() as db:
            result = await db.execute(
                select(AssessmentSession).filter(AssessmentSession.id == session_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if not row or row.completed:
                return False

            row.current_question_index = snapshot.current_question_index
            row.time_remaining_seconds = snapshot.time_remaining
            row.review_marks = list(snapshot.review_marks)
            row.tab_switches = snapshot.tab_switch_count
            row.clipboard_violations = snapshot.clipboard_violation_count
            row.proctoring_violations = [v.model_dump(mode="json") for v in snapshot.violations]
            row.knockout = snapshot.knockout
            row.is_paused = snapshot.is_paused
            row.paused_at = snapshot.paused_at
            row.pause_reason = snapshot.pause_reason
            row.last_activity_at = snapshot.last_activity_at

            stored = {a.question_id: a for a in await self._answers(db, session_id)}
            for question_id, answer in snapshot.answers.items():
                record = stored.pop(question_id, None)
                if record is None:
                    db.add(SessionAnswer(
                        session_id=session_id,
                        question_id=question_id,
                        kind=answer.kind.value,
                        answer=answer.value,
                    ))
                else:
                    record.kind = answer.kind.value
                    record.answer = answer.value
            # Cleared answers
            for record in stored.values():
                await db.delete(record)

            await db.commit()
            return True

    async def mark_session_completed(self, session_id: str, submitted_at: datetime) -> bool:
        async with self._db() as db:
            result = await db.execute(
                select(AssessmentSession).filter(AssessmentSession.id == session_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if not row:
                return False
            if not row.completed:
                row.completed = True
                row.submitted_at = submitted_at
                await db.commit()
                logger.info("Assessment session completed", session_id=session_id)
            return True

    async def _result_row(self, db: AsyncSession, session_id: str) -> Optional[AssessmentResult]:
        result = await db.execute(select(AssessmentResult).filter(AssessmentResult.session_id == session_id))
        return result.scalar_one_or_none()

    async def write_result(self, result: Result) -> Result:
        async with self._db() as db:
            existing = await self._result_row(db, result.session_id)
            if existing:
                return _to_result(existing)

            record = AssessmentResult(
                session_id=result.session_id,
                assessment_id=result.assessment_id,
                user_id=result.user_id,
                score=result.score,
                total_points=result.total_points,
                percentage=result.percentage,
                passed=result.passed,
                question_results=[o.model_dump(mode="json") for o in result.breakdown],
                time_taken_seconds=result.time_taken_seconds,
                completed_at=result.completed_at,
                tab_switches_count=result.integrity.tab_switch_count,
                clipboard_violations_count=result.integrity.clipboard_violation_count,
                proctoring_flags=list(result.integrity.violations),
                knockout=result.integrity.knockout,
            )
            db.add(record)
            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                existing = await self._result_row(db, result.session_id)
                if not existing:
                    raise
                return _to_result(existing)

            session_row = await db.get(AssessmentSession, result.session_id)
            if session_row:
                session_row.result_id = record.id
            await db.commit()
            await db.refresh(record)
            logger.info("Assessment result stored", session_id=result.session_id, result_id=record.id, passed=result.passed)
            return _to_result(record)

    async def get_result(self, session_id: str) -> Optional[Result]:
        async with self._db() as db:
            record = await self._result_row(db, session_id)
            return _to_result(record) if record else None

    async def list_active_sessions(self) -> List[SessionState]:
        async with self._db() as db:
            result = await db.execute(select(AssessmentSession).filter(AssessmentSession.completed == False))
            return [await self._load_state(db, row) for row in result.scalars().all()]

    async def list_sessions_missing_result(self) -> List[SessionState]:
        async with self._db() as db:
            result = await db.execute(
                select(AssessmentSession).filter(
                    AssessmentSession.completed == True,
                    AssessmentSession.result_id.is_(None),
                )
            )
            return [await self._load_state(db, row) for row in result.scalars().all()]
