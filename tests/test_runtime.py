import asyncio
import itertools

import pytest

from constants.messages import Messages
from core.config import settings
from core.exceptions import SubmissionFailedError
from engine.integrity import Visibility
from engine.review import ReviewState
from engine.runtime import SessionRuntime, SubmissionStatus, SubmitReason, compute_backoff


@pytest.fixture
def runtime_for(gateway, make_state, clock):
    def _build(assessment, **state_overrides):
        if assessment.id not in gateway.assessments:
            gateway.assessments[assessment.id] = assessment
        state = gateway.add_session(make_state(assessment, **state_overrides))
        return SessionRuntime(state, assessment, gateway, clock=clock.monotonic, now=clock.now)
    return _build


def _answer_all(runtime, choice_answer, skip=()):
    for qid in runtime.assessment.question_ids:
        if qid not in skip:
            runtime.set_answer(qid, choice_answer("A"))


@pytest.mark.asyncio
async def test_manual_submit_scores_and_completes(runtime_for, two_question_assessment, gateway, choice_answer):
    runtime = runtime_for(two_question_assessment)
    _answer_all(runtime, choice_answer)

    outcome = await runtime.submit()

    assert outcome.state == ReviewState.SUBMITTING
    assert outcome.result.score == 20
    assert outcome.result.passed is True
    assert runtime.submission_status == SubmissionStatus.SUBMITTED
    assert runtime.state.completed is True
    assert runtime.state.result_id == outcome.result.id
    assert gateway.sessions[runtime.session_id].completed is True
    assert gateway.results[runtime.session_id] == outcome.result
    assert runtime.accepts_input() is False


@pytest.mark.asyncio
async def test_unanswered_submit_warns_then_proceeds(runtime_for, five_question_assessment, gateway, choice_answer):
    runtime = runtime_for(five_question_assessment)
    _answer_all(runtime, choice_answer, skip={"five-q5"})

    first = await runtime.submit()
    assert first.state == ReviewState.WARNED
    assert first.unanswered == ["five-q5"]
    assert first.result is None
    assert gateway.calls["mark_session_completed"] == 0

    second = await runtime.submit()
    assert second.state == ReviewState.SUBMITTING
    assert second.result.score == 4
    assert second.result.percentage == 80


@pytest.mark.asyncio
async def test_cancel_submit_requires_new_confirmation(runtime_for, five_question_assessment, choice_answer):
    runtime = runtime_for(five_question_assessment)
    _answer_all(runtime, choice_answer, skip={"five-q2"})

    await runtime.submit()
    runtime.cancel_submit()

    assert (await runtime.submit()).state == ReviewState.WARNED


@pytest.mark.asyncio
async def test_submit_after_result_returns_same_result(runtime_for, two_question_assessment, gateway, choice_answer):
    runtime = runtime_for(two_question_assessment)
    _answer_all(runtime, choice_answer)

    first = await runtime.submit()
    second = await runtime.submit(SubmitReason.TIMEOUT)

    assert first.result == second.result
    assert gateway.calls["write_result"] == 1


@pytest.mark.asyncio
async def test_concurrent_submissions_share_one_task(runtime_for, two_question_assessment, gateway):
    runtime = runtime_for(two_question_assessment)

    timed_out, manual = await asyncio.gather(
        runtime.submit(SubmitReason.TIMEOUT),
        runtime.submit(SubmitReason.MANUAL),
    )

    assert timed_out.result == manual.result
    assert gateway.calls["write_result"] == 1
    assert gateway.calls["mark_session_completed"] == 1


@pytest.mark.asyncio
async def test_timeout_forces_submission(runtime_for, make_assessment, gateway, monkeypatch, eventually):
    monkeypatch.setattr(settings, "TICK_INTERVAL_SECONDS", 0.001)
    assessment = make_assessment("timed", 2, duration_seconds=600)
    runtime = runtime_for(assessment, time_remaining=2)
    counter = itertools.count()
    runtime._clock = lambda: next(counter)

    runtime.start()
    await eventually(lambda: runtime.result is not None)

    result = runtime.result
    assert runtime.state.time_remaining == 0
    assert result.score == 0
    assert result.percentage == 0
    assert result.passed is False
    assert all(o.points_earned == 0 and not o.is_correct for o in result.breakdown)
    notices = runtime.drain_notices()
    assert Messages.get("TIME_UP") in notices
    assert Messages.get("FORCED_SUBMIT") in notices
    await runtime.stop()
    assert not runtime.running


@pytest.mark.asyncio
async def test_timeout_without_auto_submit_freezes_input(runtime_for, make_assessment, choice_answer):
    assessment = make_assessment("manual", 1, auto_submit_on_timeout=False)
    runtime = runtime_for(assessment, time_remaining=1)

    assert runtime.timer.tick(1) is True
    runtime._on_timeout()

    assert runtime.result is None
    assert runtime.accepts_input() is False
    assert runtime.set_answer("manual-q1", choice_answer("A")) is False
    assert runtime.drain_notices() == [Messages.get("TIME_UP_MANUAL")]


@pytest.mark.asyncio
async def test_warning_blocks_input_until_acknowledged(runtime_for, make_assessment, choice_answer):
    assessment = make_assessment("tabs", 1, max_tab_switches=1)
    runtime = runtime_for(assessment)
    runtime.monitor.attach()

    runtime.on_visibility_change(Visibility.HIDDEN)
    assert runtime.accepts_input() is False
    assert runtime.set_answer("tabs-q1", choice_answer("A")) is False

    assert runtime.acknowledge_warning() is True
    assert runtime.set_answer("tabs-q1", choice_answer("A")) is True
    assert Messages.get("TAB_SWITCH_LIMIT") in runtime.drain_notices()


@pytest.mark.asyncio
async def test_knockout_can_force_submission(runtime_for, make_assessment, eventually):
    assessment = make_assessment("knock", 1, max_tab_switches=2, submit_on_knockout=True)
    runtime = runtime_for(assessment)
    runtime.monitor.attach()

    for _ in range(2):
        runtime.on_visibility_change(Visibility.HIDDEN)
        runtime.on_visibility_change(Visibility.VISIBLE)
    await eventually(lambda: runtime.result is not None)

    assert runtime.result.integrity.knockout is True
    assert runtime.result.integrity.tab_switch_count == 2


@pytest.mark.asyncio
async def test_transient_failures_are_retried(runtime_for, two_question_assessment, gateway, fast_retries, choice_answer):
    runtime = runtime_for(two_question_assessment)
    _answer_all(runtime, choice_answer)
    gateway.fail("write_result", times=2)

    outcome = await runtime.submit()

    assert outcome.result.score == 20
    assert gateway.calls["write_result"] == 3
    assert runtime.submission_status == SubmissionStatus.SUBMITTED
    assert Messages.get("SUBMISSION_RETRYING") in runtime.drain_notices()


@pytest.mark.asyncio
async def test_exhausted_retries_before_completion_reopen_session(runtime_for, two_question_assessment, gateway, fast_retries, choice_answer):
    runtime = runtime_for(two_question_assessment)
    gateway.fail("upsert_session_snapshot", times=10)

    with pytest.raises(SubmissionFailedError) as exc_info:
        await runtime.submit(SubmitReason.TIMEOUT)

    assert exc_info.value.attempts == settings.SUBMIT_MAX_ATTEMPTS
    assert runtime.state.completed is False
    assert runtime.state.submitted_at is None
    assert runtime.submission_status == SubmissionStatus.IDLE
    assert runtime.accepts_input() is True
    assert runtime.set_answer("two-q1", choice_answer("A")) is True


@pytest.mark.asyncio
async def test_exhausted_retries_after_completion_can_be_resubmitted(runtime_for, two_question_assessment, gateway, fast_retries):
    runtime = runtime_for(two_question_assessment)
    gateway.fail("mark_session_completed", times=10)

    with pytest.raises(SubmissionFailedError):
        await runtime.submit(SubmitReason.TIMEOUT)
    assert runtime.state.completed is True
    assert runtime.accepts_input() is False

    gateway.fail("mark_session_completed", times=0)
    outcome = await runtime.submit()

    assert outcome.result is not None
    assert gateway.sessions[runtime.session_id].completed is True


@pytest.mark.asyncio
async def test_stop_flushes_pending_changes(runtime_for, two_question_assessment, gateway, choice_answer):
    runtime = runtime_for(two_question_assessment)
    runtime.start()
    runtime.set_answer("two-q2", choice_answer("D"))
    runtime.navigate(index=1)

    await runtime.stop()

    stored = gateway.sessions[runtime.session_id]
    assert stored.answers["two-q2"].value == "D"
    assert stored.current_question_index == 1
    assert stored.completed is False


@pytest.mark.asyncio
async def test_pause_and_resume(runtime_for, two_question_assessment):
    runtime = runtime_for(two_question_assessment)

    assert runtime.pause("network outage") is True
    assert runtime.state.is_paused
    assert runtime.timer.tick(5) is False
    assert runtime.resume() is True
    assert runtime.state.pause_reason is None


def test_backoff_grows_and_is_capped(monkeypatch):
    monkeypatch.setattr(settings, "SUBMIT_RETRY_BASE_SECONDS", 1.0)
    monkeypatch.setattr(settings, "SUBMIT_RETRY_MAX_SECONDS", 4.0)

    assert 0.5 <= compute_backoff(1) <= 1.0
    assert 1.0 <= compute_backoff(2) <= 2.0
    assert 2.0 <= compute_backoff(10) <= 4.0


@pytest.mark.asyncio
async def test_restored_runtime_at_zero_submits_on_start(runtime_for, make_assessment, gateway, monkeypatch, eventually):
    monkeypatch.setattr(settings, "TICK_INTERVAL_SECONDS", 0.001)
    assessment = make_assessment("elapsed", 2, duration_seconds=600)
    runtime = runtime_for(assessment, time_remaining=0)

    runtime.start()
    await eventually(lambda: runtime.result is not None)

    assert runtime.state.completed is True
    assert gateway.sessions[runtime.session_id].completed is True
    assert gateway.results[runtime.session_id] == runtime.result
    assert Messages.get("TIME_UP") in runtime.drain_notices()
    await runtime.stop()


@pytest.mark.asyncio
async def test_restored_runtime_at_zero_without_auto_submit_stays_frozen(runtime_for, make_assessment, gateway):
    assessment = make_assessment("elapsed-manual", 1, auto_submit_on_timeout=False)
    runtime = runtime_for(assessment, time_remaining=0)

    runtime.start()
    await asyncio.sleep(0)

    assert runtime.result is None
    assert runtime.accepts_input() is False
    assert runtime.drain_notices() == [Messages.get("TIME_UP_MANUAL")]
    assert gateway.calls["mark_session_completed"] == 0
    await runtime.stop()


@pytest.mark.asyncio
async def test_completed_session_without_result_skips_review_gate(runtime_for, five_question_assessment, gateway, clock):
    runtime = runtime_for(five_question_assessment, completed=True, submitted_at=clock.now())

    outcome = await runtime.submit(SubmitReason.MANUAL)

    assert outcome.state == ReviewState.SUBMITTING
    assert outcome.unanswered == []
    assert outcome.result.score == 0
    assert outcome.result.total_points == 5
    assert gateway.results[runtime.session_id] == outcome.result
    assert gateway.calls["upsert_session_snapshot"] == 0
