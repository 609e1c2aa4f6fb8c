import asyncio
import uuid
from typing import Optional
from redis.asyncio import Redis
from redis.exceptions import RedisError
from core.clock import utcnow
from core.config import settings
from core.exceptions import AssessmentNotFoundError, SessionNotFoundError
from core.logger import logger
from engine.runtime import SessionRuntime, SubmitReason
from engine.scoring import score
from engine.state import AssessmentConfig, Result, SessionState
from services.persistence import PersistenceGateway
from services.task_manager import RuntimeRegistry, runtime_registry

LOCK_RETRY_SECONDS = 0.1

class SessionService:
    def __init__(self, gateway: PersistenceGateway, redis: Optional[Redis] = None, registry: RuntimeRegistry = None):
        self.gateway = gateway
        self.redis = redis
        self.registry = registry if registry is not None else runtime_registry

    async def _acquire_lock(self, key: str) -> Optional[str]:
        if not self.redis:
            return None
        token = uuid.uuid4().hex
        deadline = asyncio.get_running_loop().time() + settings.SESSION_LOCK_TTL_SECONDS
        while True:
            try:
                acquired = await self.redis.set(key, token, nx=True, ex=settings.SESSION_LOCK_TTL_SECONDS)
            except RedisError as e:
                logger.warning("Session lock unavailable, relying on database constraint", key=key, error=str(e))
                return None
            if acquired:
                return token
            if asyncio.get_running_loop().time() >= deadline:
                # Holder died; the database unique index still guards the invariant
                logger.warning("Session lock wait timed out", key=key)
                return None
            await asyncio.sleep(LOCK_RETRY_SECONDS)

    async def _release_lock(self, key: str, token: Optional[str]):
        if not self.redis or not token:
            return
        try:
            current = await self.redis.get(key)
            if current == token:
                await self.redis.delete(key)
        except RedisError as e:
            # Expires on its own after the TTL
            logger.warning("Session lock release failed", key=key, error=str(e))

    async def get_assessment(self, assessment_id: str) -> AssessmentConfig:
        assessment = await self.gateway.get_assessment(assessment_id)
        if not assessment:
            raise AssessmentNotFoundError(assessment_id)
        return assessment

    async def create_or_resume(self, assessment_id: str, user_id: str, assessment: AssessmentConfig = None) -> SessionState:
        """Return the candidate's active session for the assessment, creating it on first entry."""
        if assessment is None:
            assessment = await self.get_assessment(assessment_id)

        key = f"proctor:session-lock:{assessment_id}:{user_id}"
        token = await self._acquire_lock(key)
        try:
            session = await self.gateway.get_active_session(assessment_id, user_id)
            if session:
                logger.info("Assessment session resumed", session_id=session.session_id, user_id=user_id)
            else:
                session = await self.gateway.create_session(assessment_id, user_id, assessment.duration_seconds)
        finally:
            await self._release_lock(key, token)

        session.clamp_time(assessment.duration_seconds)
        return session

    async def open_runtime(self, assessment_id: str, user_id: str) -> SessionRuntime:
        assessment = await self.get_assessment(assessment_id)
        session = await self.create_or_resume(assessment_id, user_id, assessment)
        runtime = self.registry.get(session.session_id)
        if runtime is not None:
            return runtime

        runtime = SessionRuntime(session, assessment, self.gateway)
        await self.registry.register(runtime)
        return runtime

    async def get_runtime(self, session_id: str, user_id: str) -> SessionRuntime:
        """
        Live runtime for a session owned by `user_id`. After a process restart
        the runtime is rebuilt from the last persisted snapshot.
        """
        runtime = self.registry.get(session_id)
        if runtime is not None:
            if runtime.state.user_id != user_id:
                raise SessionNotFoundError(session_id)
            return runtime

        session = await self.gateway.get_session(session_id)
        if not session or session.user_id != user_id:
            raise SessionNotFoundError(session_id)

        assessment = await self.get_assessment(session.assessment_id)
        session.clamp_time(assessment.duration_seconds)
        runtime = SessionRuntime(session, assessment, self.gateway)
        if session.completed:
            runtime.result = await self.gateway.get_result(session_id)
            return runtime

        await self.registry.register(runtime)
        logger.info("Session runtime restored from snapshot", session_id=session_id)
        return runtime

    async def get_result(self, session_id: str, user_id: str) -> Optional[Result]:
        session = await self.gateway.get_session(session_id)
        if not session or session.user_id != user_id:
            raise SessionNotFoundError(session_id)
        if not session.completed:
            return None
        result = await self.gateway.get_result(session_id)
        if result is None:
            result = await self.recover_result(session)
        return result

    async def recover_result(self, session: SessionState) -> Result:
        """Re-derive and store the result of a completed session whose result write was lost."""
        assessment = await self.get_assessment(session.assessment_id)
        answer_key = await self.gateway.get_answer_key(session.assessment_id)
        result = await self.gateway.write_result(score(session, assessment, answer_key))
        logger.info("Assessment result recovered", session_id=session.session_id, result_id=result.id)
        return result

    async def force_submit(self, session: SessionState, reason: SubmitReason) -> Result:
        """Submit a session without the review gate, using the live runtime when there is one."""
        runtime = self.registry.get(session.session_id)
        if runtime is None:
            assessment = await self.get_assessment(session.assessment_id)
            runtime = SessionRuntime(session, assessment, self.gateway)

        outcome = await runtime.submit(reason)
        await self.registry.discard(session.session_id, flush=False)
        return outcome.result

    async def expire_if_inactive(self, session: SessionState, assessment: AssessmentConfig) -> Optional[Result]:
        idle = (utcnow() - session.last_activity_at).total_seconds()
        limit = assessment.duration_seconds * settings.INACTIVITY_MULTIPLIER
        if idle <= limit:
            return None

        runtime = self.registry.get(session.session_id)
        if runtime is not None:
            # The live copy may hold activity newer than the snapshot
            idle = (utcnow() - runtime.state.last_activity_at).total_seconds()
            if idle <= limit:
                return None
            session = runtime.state

        logger.info("Expiring inactive session", session_id=session.session_id, idle_seconds=int(idle))
        return await self.force_submit(session, SubmitReason.INACTIVITY)
