from fastapi import FastAPI, HTTPException, Depends, Header, Response, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import hmac
import hashlib
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from core.config import settings
from core.exceptions import AssessmentNotFoundError, SessionNotFoundError, SubmissionFailedError
from core.logger import logger
from db.session import get_redis
from engine.collector import Direction
from engine.integrity import ClipboardAction, ClipboardVerdict, Visibility
from engine.review import ReviewState
from engine.runtime import SessionRuntime, SubmitReason
from engine.state import Answer, AnswerKind, Progress, QuestionView, Result
from services.persistence import PersistenceGateway
from services.session_service import SessionService
from services.task_manager import runtime_registry
from utils.exporter import generate_result_docx

# API Documentation
API_DESCRIPTION = """
## Proctored Assessment API

Candidate-facing REST API for taking a timed, proctored assessment.

### Authentication

All endpoints require a signed candidate token issued by the host application:

- Header: `X-Auth-Token: <user_id>:<timestamp>:<signature>`

### Sessions

- A candidate has at most one active session per assessment; opening the
  assessment again resumes it.
- Progress is autosaved every 30 seconds and on submission.
- Integrity events (tab visibility, clipboard, face presence) are recorded for
  human review.
"""

TAGS_METADATA = [
    {
        "name": "assessments",
        "description": "Question bank and session entry.",
    },
    {
        "name": "sessions",
        "description": "Answering, navigation and submission inside a live session.",
    },
    {
        "name": "integrity",
        "description": "Proctoring signals reported by the candidate client.",
    },
    {
        "name": "results",
        "description": "Scored results and review reports.",
    },
]

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Flush and stop every live session; they resume from the snapshot on restart
    await runtime_registry.stop_all()


app = FastAPI(
    title="Proctored Assessment API",
    description=API_DESCRIPTION,
    version="1.0.0",
    openapi_tags=TAGS_METADATA,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@app.middleware("http")
async def add_cache_headers(request: Request, call_next):
    response = await call_next(request)

    # Session state changes every second; never serve it from a cache
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("Pragma", "no-cache")

    return response

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Pydantic Models with Documentation ===

class AnswerRequest(BaseModel):
    """Request body for answering a question. A blank value clears the answer."""
    kind: AnswerKind = Field(..., description="choice, text or code")
    value: str = Field(..., description="Selected option text or the typed answer", max_length=20000)

    class Config:
        json_schema_extra = {
            "example": {
                "kind": "choice",
                "value": "Tashkent",
            }
        }


class NavigateRequest(BaseModel):
    """Move relative to the current question or jump to an index."""
    direction: Optional[Direction] = Field(None, description="next or previous")
    index: Optional[int] = Field(None, description="Zero-based question index to jump to", ge=0)


class VisibilityEvent(BaseModel):
    state: Visibility = Field(..., description="Page visibility reported by the client")


class ClipboardEvent(BaseModel):
    action: ClipboardAction = Field(..., description="copy, cut, paste or contextmenu")


class PresenceEvent(BaseModel):
    """One sample from the face-presence feed."""
    visible: bool = Field(True, description="Whether a face was detected")
    camera_available: bool = Field(True, description="False when camera access was denied")
    at: Optional[datetime] = Field(None, description="Sample time (UTC); defaults to server time")


class PauseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class SessionView(BaseModel):
    """Live read model of a session."""
    session_id: str
    assessment_id: str
    time_remaining: int = Field(..., description="Seconds left on the countdown")
    time_display: str = Field(..., description="Remaining time as MM:SS")
    timer_phase: str = Field(..., description="normal, warning, critical or expired")
    current_question_index: int
    answers: Dict[str, Answer]
    review_marks: List[str]
    progress: Progress
    tab_switch_count: int
    clipboard_violation_count: int
    knockout: bool
    warning_pending: bool = Field(..., description="A blocking integrity warning awaits acknowledgment")
    accepts_input: bool
    is_paused: bool
    completed: bool
    submission_status: str
    result_id: Optional[str] = None
    notices: List[str] = Field(default_factory=list, description="Pending notices, drained on read")


class AnswerResponse(BaseModel):
    accepted: bool
    progress: Progress


class ReviewResponse(BaseModel):
    accepted: bool
    marked: Optional[bool] = None


class NavigateResponse(BaseModel):
    current_question_index: int


class VisibilityResponse(BaseModel):
    counted: bool = Field(..., description="The event counted as a tab switch")
    tab_switch_count: int
    warning_pending: bool


class PresenceResponse(BaseModel):
    violation: Optional[str] = None


class SubmitResponse(BaseModel):
    """`warned` lists the unanswered questions; submit again to confirm."""
    state: ReviewState
    unanswered: List[str] = Field(default_factory=list)
    result: Optional[Result] = None


class SuccessResponse(BaseModel):
    """Generic success response."""
    status: str = Field(default="success", description="Operation status")


def sign_token(user_id: str, timestamp: Optional[int] = None) -> str:
    """Issue a candidate token in the format checked by `verify_token`."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    data = f"{user_id}:{timestamp}"
    signature = hmac.new(settings.AUTH_SECRET.encode(), data.encode(), hashlib.sha256).hexdigest()
    return f"{data}:{signature}"


def verify_token(token: str) -> Optional[str]:
    """
    Verify the signed token issued by the host application.
    Format: {user_id}:{timestamp}:{signature}
    """
    if not token or not settings.AUTH_SECRET:
        return None

    parts = token.rsplit(':', 2)
    if len(parts) != 3:
        return None

    user_id, timestamp_str, signature = parts
    if not user_id:
        return None

    try:
        timestamp = int(timestamp_str)
    except ValueError:
        return None

    # Check expiration
    if int(time.time()) - timestamp > settings.TOKEN_TTL_SECONDS:
        logger.warning("Token expired", user_id=user_id)
        return None

    data = f"{user_id}:{timestamp_str}"
    expected_signature = hmac.new(settings.AUTH_SECRET.encode(), data.encode(), hashlib.sha256).hexdigest()

    if hmac.compare_digest(expected_signature, signature):
        return user_id

    logger.warning("Token signature mismatch", user_id=user_id)
    return None


def get_current_user(x_auth_token: str = Header(None)) -> str:
    user_id = verify_token(x_auth_token)
    if user_id:
        return user_id

    logger.warning("Auth failed: Missing or invalid credentials")
    raise HTTPException(status_code=401, detail="Unauthorized")


_gateway: Optional[PersistenceGateway] = None


def get_gateway() -> PersistenceGateway:
    global _gateway
    if _gateway is None:
        from db.gateway import SqlAlchemyGateway
        _gateway = SqlAlchemyGateway()
    return _gateway


def get_session_service(
    gateway: PersistenceGateway = Depends(get_gateway),
    redis=Depends(get_redis),
) -> SessionService:
    return SessionService(gateway, redis=redis)


async def get_runtime(
    session_id: str,
    user_id: str = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> SessionRuntime:
    try:
        return await service.get_runtime(session_id, user_id)
    except (SessionNotFoundError, AssessmentNotFoundError):
        raise HTTPException(status_code=404, detail="Session not found")


def _session_view(runtime: SessionRuntime) -> SessionView:
    state = runtime.state
    return SessionView(
        session_id=state.session_id,
        assessment_id=state.assessment_id,
        time_remaining=state.time_remaining,
        time_display=runtime.timer.format_remaining(),
        timer_phase=runtime.timer.phase.value,
        current_question_index=state.current_question_index,
        answers=dict(state.answers),
        review_marks=sorted(state.review_marks),
        progress=runtime.progress(),
        tab_switch_count=state.tab_switch_count,
        clipboard_violation_count=state.clipboard_violation_count,
        knockout=state.knockout,
        warning_pending=runtime.monitor.warning_pending,
        accepts_input=runtime.accepts_input(),
        is_paused=state.is_paused,
        completed=state.completed,
        submission_status=runtime.submission_status.value,
        result_id=state.result_id,
        notices=runtime.drain_notices(),
    )


# === Assessments ===

@app.get(
    "/api/assessments/{assessment_id}/questions",
    response_model=List[QuestionView],
    tags=["assessments"],
    summary="List assessment questions",
    description="Returns the questions of an assessment in order. Correct answers are never included.",
    responses={
        401: {"description": "Authentication required"},
        404: {"description": "Assessment not found"},
    },
)
async def list_questions(
    assessment_id: str,
    user_id: str = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    try:
        assessment = await service.get_assessment(assessment_id)
    except AssessmentNotFoundError:
        raise HTTPException(status_code=404, detail="Assessment not found")
    return assessment.questions


@app.post(
    "/api/assessments/{assessment_id}/session",
    response_model=SessionView,
    tags=["assessments"],
    summary="Start or resume a session",
    description="Returns the candidate's active session for the assessment, creating it on first entry.",
    responses={
        401: {"description": "Authentication required"},
        404: {"description": "Assessment not found"},
    },
)
async def open_session(
    assessment_id: str,
    user_id: str = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    try:
        runtime = await service.open_runtime(assessment_id, user_id)
    except AssessmentNotFoundError:
        raise HTTPException(status_code=404, detail="Assessment not found")
    return _session_view(runtime)


# === Sessions ===

@app.get("/api/sessions/{session_id}", response_model=SessionView, tags=["sessions"], summary="Get session state")
async def get_session(runtime: SessionRuntime = Depends(get_runtime)):
    return _session_view(runtime)


@app.get("/api/sessions/{session_id}/progress", response_model=Progress, tags=["sessions"], summary="Get progress")
async def get_progress(runtime: SessionRuntime = Depends(get_runtime)):
    return runtime.progress()


@app.put(
    "/api/sessions/{session_id}/answers/{question_id}",
    response_model=AnswerResponse,
    tags=["sessions"],
    summary="Answer a question",
    description="Stores the answer (last write wins). Ignored when the session does not accept input.",
)
async def put_answer(question_id: str, body: AnswerRequest, runtime: SessionRuntime = Depends(get_runtime)):
    accepted = runtime.set_answer(question_id, Answer(kind=body.kind, value=body.value))
    return {"accepted": accepted, "progress": runtime.progress()}


@app.post(
    "/api/sessions/{session_id}/review/{question_id}",
    response_model=ReviewResponse,
    tags=["sessions"],
    summary="Toggle review mark",
)
async def toggle_review(question_id: str, runtime: SessionRuntime = Depends(get_runtime)):
    marked = runtime.toggle_review(question_id)
    return {"accepted": marked is not None, "marked": marked}


@app.post("/api/sessions/{session_id}/navigate", response_model=NavigateResponse, tags=["sessions"], summary="Navigate")
async def navigate(body: NavigateRequest, runtime: SessionRuntime = Depends(get_runtime)):
    index = runtime.navigate(direction=body.direction, index=body.index)
    return {"current_question_index": index}


@app.post(
    "/api/sessions/{session_id}/pause",
    response_model=SessionView,
    tags=["sessions"],
    summary="Pause the timer",
    responses={403: {"description": "Pausing is disabled"}},
)
async def pause_session(body: PauseRequest, runtime: SessionRuntime = Depends(get_runtime)):
    if not settings.ALLOW_CANDIDATE_PAUSE:
        raise HTTPException(status_code=403, detail="Pausing is disabled for this deployment")
    runtime.pause(body.reason)
    return _session_view(runtime)


@app.post(
    "/api/sessions/{session_id}/resume",
    response_model=SessionView,
    tags=["sessions"],
    summary="Resume the timer",
    responses={403: {"description": "Pausing is disabled"}},
)
async def resume_session(runtime: SessionRuntime = Depends(get_runtime)):
    if not settings.ALLOW_CANDIDATE_PAUSE:
        raise HTTPException(status_code=403, detail="Pausing is disabled for this deployment")
    runtime.resume()
    return _session_view(runtime)


@app.post(
    "/api/sessions/{session_id}/submit",
    response_model=SubmitResponse,
    tags=["sessions"],
    summary="Submit the session",
    description="Returns `warned` with the unanswered questions the first time; submitting again confirms.",
    responses={503: {"description": "Submission could not be persisted; it will be recovered"}},
)
async def submit_session(runtime: SessionRuntime = Depends(get_runtime)):
    try:
        outcome = await runtime.submit(SubmitReason.MANUAL)
    except SubmissionFailedError as e:
        raise HTTPException(status_code=503, detail=str(e))

    if outcome.result is not None:
        await runtime_registry.discard(runtime.session_id, flush=False)
    return outcome


@app.post("/api/sessions/{session_id}/submit/cancel", response_model=SuccessResponse, tags=["sessions"], summary="Keep answering")
async def cancel_submit(runtime: SessionRuntime = Depends(get_runtime)):
    runtime.cancel_submit()
    return {"status": "success"}


@app.delete(
    "/api/sessions/{session_id}/runtime",
    response_model=SuccessResponse,
    tags=["sessions"],
    summary="Reset in-memory session",
    description="Drops the live runtime after a final flush. Persisted session history is untouched.",
)
async def reset_runtime(runtime: SessionRuntime = Depends(get_runtime)):
    await runtime_registry.discard(runtime.session_id)
    return {"status": "success"}


# === Integrity ===

@app.post("/api/sessions/{session_id}/events/visibility", response_model=VisibilityResponse, tags=["integrity"])
async def visibility_event(body: VisibilityEvent, runtime: SessionRuntime = Depends(get_runtime)):
    counted = runtime.on_visibility_change(body.state)
    return {
        "counted": counted,
        "tab_switch_count": runtime.state.tab_switch_count,
        "warning_pending": runtime.monitor.warning_pending,
    }


@app.post("/api/sessions/{session_id}/events/clipboard", response_model=ClipboardVerdict, tags=["integrity"])
async def clipboard_event(body: ClipboardEvent, runtime: SessionRuntime = Depends(get_runtime)):
    return runtime.on_clipboard(body.action)


@app.post("/api/sessions/{session_id}/events/presence", response_model=PresenceResponse, tags=["integrity"])
async def presence_event(body: PresenceEvent, runtime: SessionRuntime = Depends(get_runtime)):
    if not body.camera_available:
        entry = runtime.on_camera_unavailable()
    else:
        at = body.at
        if at is not None and at.tzinfo is not None:
            at = at.astimezone(timezone.utc).replace(tzinfo=None)
        entry = runtime.on_presence_sample(body.visible, at)
    return {"violation": str(entry) if entry else None}


@app.post("/api/sessions/{session_id}/warning/ack", response_model=SessionView, tags=["integrity"])
async def acknowledge_warning(runtime: SessionRuntime = Depends(get_runtime)):
    runtime.acknowledge_warning()
    return _session_view(runtime)


# === Results ===

async def _load_result(runtime: SessionRuntime, user_id: str, service: SessionService) -> Result:
    result = runtime.result
    if result is None:
        result = await service.get_result(runtime.session_id, user_id)
    if result is None:
        raise HTTPException(status_code=409, detail="Session has not been submitted")
    return result


@app.get(
    "/api/sessions/{session_id}/result",
    response_model=Result,
    tags=["results"],
    summary="Get the scored result",
    responses={409: {"description": "Session has not been submitted"}},
)
async def get_result(
    runtime: SessionRuntime = Depends(get_runtime),
    user_id: str = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    return await _load_result(runtime, user_id, service)


@app.get(
    "/api/sessions/{session_id}/result/report",
    tags=["results"],
    summary="Download the result report",
    description="The scored result with integrity flags as a .docx document for human review.",
    responses={200: {"content": {DOCX_MEDIA_TYPE: {}}}},
)
async def get_result_report(
    runtime: SessionRuntime = Depends(get_runtime),
    user_id: str = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    result = await _load_result(runtime, user_id, service)
    buffer = generate_result_docx(result, runtime.assessment)
    return Response(
        content=buffer.getvalue(),
        media_type=DOCX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="result_{result.session_id}.docx"'},
    )


@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    return Response(status_code=204)
