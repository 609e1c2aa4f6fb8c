"""
engine/runtime.py

One live proctored session on the asyncio event loop.

The runtime owns a single `SessionState` and the components that mutate it.
Three activities touch the state: the one-second tick loop, the autosave loop
and integrity events delivered by the API. All of them mutate synchronously
between awaits, so the event loop serializes them and no lock is needed.

Submission order: final snapshot flush, mark the session completed, score,
write the result (upsert keyed by session id). A completed session without a
result is the in-progress marker the session monitor recovers from.
"""

import asyncio
import random
import time
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from constants.messages import Messages
from core.clock import utcnow
from core.config import settings
from core.exceptions import PersistenceError, SubmissionFailedError
from core.logger import logger
from engine.autosave import AutosaveDriver
from engine.collector import AnswerCollector, Direction
from engine.integrity import ClipboardAction, ClipboardVerdict, IntegrityMonitor, Visibility
from engine.review import ReviewGate, ReviewState
from engine.scoring import score
from engine.state import Answer, AssessmentConfig, Progress, Result, ScoringKey, SessionState
from engine.timer import SessionTimer


class SubmitReason(str, Enum):
    MANUAL = "manual"
    TIMEOUT = "timeout"
    KNOCKOUT = "knockout"
    INACTIVITY = "inactivity"


class SubmissionStatus(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    RETRYING = "retrying"
    SUBMITTED = "submitted"


class SubmitOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: ReviewState
    unanswered: List[str] = Field(default_factory=list)
    result: Optional[Result] = None


def compute_backoff(attempt: int) -> float:
    """Exponential backoff with jitter for attempt 1, 2, ..."""
    base = settings.SUBMIT_RETRY_BASE_SECONDS * (2 ** (attempt - 1))
    return min(settings.SUBMIT_RETRY_MAX_SECONDS, base) * random.uniform(0.5, 1.0)


class SessionRuntime:
    def __init__(
        self,
        state: SessionState,
        assessment: AssessmentConfig,
        gateway,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ):
        self.state = state
        self.assessment = assessment
        self.gateway = gateway
        self._clock = clock
        self._now = now

        self.notices: Deque[str] = deque(maxlen=20)
        self.submission_status = SubmissionStatus.IDLE
        self.result: Optional[Result] = None

        self.timer = SessionTimer(state, assessment)
        self.autosave = AutosaveDriver(state, gateway)
        self.collector = AnswerCollector(state, assessment, now=now, input_open=self.accepts_input)
        self.monitor = IntegrityMonitor(
            state,
            assessment,
            now=now,
            on_warning=self._on_warning,
            on_notice=self.notices.append,
        )
        self.review = ReviewGate()

        self._tasks: List[asyncio.Task] = []
        self._submit_task: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def accepts_input(self) -> bool:
        if self.state.completed or self.submission_status != SubmissionStatus.IDLE:
            return False
        if self.monitor.warning_pending:
            return False
        # Timed out without auto-submit: frozen until the candidate submits
        if self.timer.expired:
            return False
        return True

    # Lifecycle

    def start(self):
        if self.running or self.state.completed:
            return
        self.monitor.attach()
        self._tasks = [asyncio.create_task(self.autosave.run(), name=f"autosave:{self.session_id}")]
        if not self.timer.expired:
            self._tasks.insert(0, asyncio.create_task(self._tick_loop(), name=f"tick:{self.session_id}"))
        logger.info(
            "Session runtime started",
            session_id=self.session_id,
            time_remaining=self.state.time_remaining,
            question_index=self.state.current_question_index,
        )
        if self.timer.expired:
            # Restored after the countdown already reached zero
            self._on_timeout()

    async def stop(self, flush: bool = True):
        """Stop periodic work. The session itself stays active and resumable."""
        self.monitor.detach()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        if flush and not self.state.completed:
            await self.autosave.flush()
        logger.info("Session runtime stopped", session_id=self.session_id)

    async def _tick_loop(self):
        last = self._clock()
        while not self.state.completed:
            await asyncio.sleep(settings.TICK_INTERVAL_SECONDS)
            elapsed = int(self._clock() - last)
            if elapsed <= 0:
                continue
            # Advance by whole seconds only; the remainder carries over
            last += elapsed
            if self.timer.tick(elapsed):
                self._on_timeout()
                return

    def _on_timeout(self):
        if self.assessment.auto_submit_on_timeout:
            self.notices.append(Messages.get("TIME_UP"))
            # Own task so the network round trips never run on the tick loop
            self._ensure_submit_task(SubmitReason.TIMEOUT)
        else:
            self.notices.append(Messages.get("TIME_UP_MANUAL"))

    def _on_warning(self):
        self.notices.append(Messages.get("TAB_SWITCH_LIMIT"))
        if self.assessment.submit_on_knockout:
            self._ensure_submit_task(SubmitReason.KNOCKOUT)

    # Candidate input

    def set_answer(self, question_id: str, answer: Answer) -> bool:
        return self.collector.set_answer(question_id, answer)

    def toggle_review(self, question_id: str) -> Optional[bool]:
        return self.collector.toggle_review(question_id)

    def navigate(self, direction: Optional[Direction] = None, index: Optional[int] = None) -> int:
        return self.collector.navigate(direction=direction, index=index)

    def progress(self) -> Progress:
        return self.collector.progress()

    def pause(self, reason: Optional[str] = None) -> bool:
        return self.timer.pause(self._now(), reason)

    def resume(self) -> bool:
        return self.timer.resume(self._now())

    # Environment signals

    def on_visibility_change(self, visibility: Visibility) -> bool:
        return self.monitor.on_visibility_change(visibility)

    def on_clipboard(self, action: ClipboardAction) -> ClipboardVerdict:
        return self.monitor.on_clipboard(action)

    def on_presence_sample(self, visible: bool, at: Optional[datetime] = None):
        return self.monitor.on_presence_sample(visible, at)

    def on_camera_unavailable(self):
        return self.monitor.on_camera_unavailable()

    def acknowledge_warning(self) -> bool:
        return self.monitor.acknowledge_warning()

    def drain_notices(self) -> List[str]:
        notices = list(self.notices)
        self.notices.clear()
        return notices

    # Submission

    def cancel_submit(self):
        self.review.cancel()

    async def submit(self, reason: SubmitReason = SubmitReason.MANUAL) -> SubmitOutcome:
        """
        Manual submissions pass the review gate first and may come back
        `warned`. Forced submissions skip it, and so does a session that is
        already completed in the store: its result is only re-derived.
        Concurrent calls share one in-flight submission.
        """
        if self.result is not None:
            return SubmitOutcome(state=ReviewState.SUBMITTING, result=self.result)

        if self._submit_task is None:
            if reason == SubmitReason.MANUAL and not self.state.completed:
                decision = self.review.request_submit(self.collector.unanswered_question_ids())
                if not decision.proceed:
                    logger.info(
                        "Submission needs confirmation",
                        session_id=self.session_id,
                        unanswered=len(decision.unanswered),
                    )
                    return SubmitOutcome(state=decision.state, unanswered=decision.unanswered)
            self._ensure_submit_task(reason)

        result = await asyncio.shield(self._submit_task)
        return SubmitOutcome(state=ReviewState.SUBMITTING, result=result)

    def _ensure_submit_task(self, reason: SubmitReason) -> asyncio.Task:
        if self._submit_task is None:
            if reason != SubmitReason.MANUAL:
                self.review.force()
            self._submit_task = asyncio.create_task(self._finalize(reason), name=f"submit:{self.session_id}")
            self._submit_task.add_done_callback(self._on_submit_done)
        return self._submit_task

    def _on_submit_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Submission failed", session_id=self.session_id, error=str(error))
            # Allow a later retry from the candidate or the session monitor
            self._submit_task = None
            self.submission_status = SubmissionStatus.IDLE
            if not self.state.completed:
                # Nothing durable happened yet: the candidate is back to answering
                self.state.submitted_at = None
                self.review = ReviewGate()
                self.monitor.attach()

    async def _retrying(self, label: str, operation):
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except PersistenceError as e:
                if attempt >= settings.SUBMIT_MAX_ATTEMPTS:
                    raise SubmissionFailedError(self.session_id, attempt, e) from e
                if self.submission_status != SubmissionStatus.RETRYING:
                    self.submission_status = SubmissionStatus.RETRYING
                    self.notices.append(Messages.get("SUBMISSION_RETRYING"))
                delay = compute_backoff(attempt)
                logger.warning(
                    "Submission step failed, retrying",
                    session_id=self.session_id,
                    step=label,
                    attempt=attempt,
                    delay=round(delay, 2),
                    error=str(e),
                )
                await asyncio.sleep(delay)

    async def _finalize(self, reason: SubmitReason) -> Result:
        self.submission_status = SubmissionStatus.SUBMITTING
        logger.info("Submitting session", session_id=self.session_id, reason=reason.value)

        # Freeze: from here on nothing may change answers or counters
        self.monitor.detach()
        if self.state.submitted_at is None:
            self.state.submitted_at = self._now()
        submitted_at = self.state.submitted_at

        if not self.state.completed:
            await self._retrying("snapshot", self._final_flush)
            self.state.completed = True

        await self._retrying("complete", lambda: self.gateway.mark_session_completed(self.session_id, submitted_at))
        answer_key: Sequence[ScoringKey] = await self._retrying(
            "answer_key", lambda: self.gateway.get_answer_key(self.assessment.id)
        )

        result = score(self.state, self.assessment, answer_key)
        stored = await self._retrying("result", lambda: self.gateway.write_result(result))

        self.result = stored
        self.state.result_id = stored.id
        self.submission_status = SubmissionStatus.SUBMITTED
        if reason != SubmitReason.MANUAL:
            self.notices.append(Messages.get("FORCED_SUBMIT"))

        for task in self._tasks:
            task.cancel()
        logger.info(
            "Session submitted",
            session_id=self.session_id,
            reason=reason.value,
            score=stored.score,
            percentage=stored.percentage,
            passed=stored.passed,
        )
        return stored

    async def _final_flush(self):
        snapshot = self.state.snapshot()
        await self.gateway.upsert_session_snapshot(self.session_id, snapshot)
        self.state.mark_flushed(self.state.revision)
