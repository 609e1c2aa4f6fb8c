"""
engine/integrity.py

Proctoring signals for one session: page visibility, clipboard and context
menu interception, and an optional face-presence feed.

Violations are recorded on the session for human review. Only the tab-switch
limit has a direct consequence: it raises a blocking warning that stops input
until the candidate acknowledges it.
"""

from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict

from constants.messages import Messages
from core.clock import utcnow
from core.logger import logger
from engine.state import AssessmentConfig, SessionState, ViolationEntry, ViolationKind


class Visibility(str, Enum):
    VISIBLE = "visible"
    HIDDEN = "hidden"


class ClipboardAction(str, Enum):
    COPY = "copy"
    CUT = "cut"
    PASTE = "paste"
    CONTEXT_MENU = "contextmenu"


class ClipboardVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    prevent_default: bool
    notice: Optional[str] = None
    counted: bool = False


_CLIPBOARD_VIOLATIONS = {
    ClipboardAction.COPY: (ViolationKind.COPY, "VIOLATION_COPY", "CLIPBOARD_BLOCKED"),
    ClipboardAction.CUT: (ViolationKind.CUT, "VIOLATION_CUT", "CUT_BLOCKED"),
    ClipboardAction.PASTE: (ViolationKind.PASTE, "VIOLATION_PASTE", "CLIPBOARD_BLOCKED"),
}


class IntegrityMonitor:
    def __init__(
        self,
        state: SessionState,
        assessment: AssessmentConfig,
        now: Callable[[], datetime] = utcnow,
        on_warning: Optional[Callable[[], None]] = None,
        on_notice: Optional[Callable[[str], None]] = None,
    ):
        self.state = state
        self.assessment = assessment
        self._now = now
        self._on_warning = on_warning
        self._on_notice = on_notice

        self.attached = False
        self.warning_pending = False
        self.warnings_raised = 0

        self._last_visibility = Visibility.VISIBLE
        self._absent_since: Optional[datetime] = None
        self._absence_reported = False

    def attach(self):
        self.attached = True
        logger.debug("Integrity monitor attached", session_id=self.state.session_id)

    def detach(self):
        self.attached = False
        logger.debug("Integrity monitor detached", session_id=self.state.session_id)

    @property
    def recording(self) -> bool:
        return self.attached and not self.state.completed

    def _record(self, kind: ViolationKind, message_key: str, at: datetime) -> ViolationEntry:
        entry = ViolationEntry(
            kind=kind,
            message=Messages.get(message_key).format(time=at.strftime("%H:%M:%S")),
            at=at,
        )
        self.state.violations.append(entry)
        self.state.mark_dirty()
        logger.info("Integrity violation recorded", session_id=self.state.session_id, kind=kind.value)
        return entry

    def _notify(self, key: str) -> str:
        notice = Messages.get(key)
        if self._on_notice:
            self._on_notice(notice)
        return notice

    # Visibility

    def on_visibility_change(self, visibility: Visibility) -> bool:
        """
        Handle a page visibility event. Returns True when it counted as a tab
        switch. Repeated events for the same state are ignored.
        """
        if not self.recording or not self.assessment.tab_switch_detection:
            return False
        if visibility == self._last_visibility:
            return False
        self._last_visibility = visibility

        if visibility != Visibility.HIDDEN:
            return False

        self.state.tab_switch_count += 1
        self.state.mark_dirty()
        logger.info(
            "Tab switch detected",
            session_id=self.state.session_id,
            count=self.state.tab_switch_count,
            limit=self.assessment.max_tab_switches,
        )

        if self.state.tab_switch_count >= self.assessment.max_tab_switches:
            self._record(ViolationKind.TAB_SWITCH, "VIOLATION_TAB_SWITCH", self._now())
            self.state.knockout = True
            if not self.warning_pending:
                self._raise_warning()
        return True

    def _raise_warning(self):
        self.warning_pending = True
        self.warnings_raised += 1
        logger.warning("Blocking integrity warning raised", session_id=self.state.session_id)
        if self._on_warning:
            self._on_warning()

    def acknowledge_warning(self) -> bool:
        if not self.warning_pending:
            return False
        self.warning_pending = False
        logger.info("Integrity warning acknowledged", session_id=self.state.session_id)
        return True

    # Clipboard

    def on_clipboard(self, action: ClipboardAction) -> ClipboardVerdict:
        if not self.recording:
            return ClipboardVerdict(prevent_default=False)

        if action == ClipboardAction.CONTEXT_MENU:
            return ClipboardVerdict(prevent_default=True, notice=self._notify("CONTEXT_MENU_BLOCKED"))

        kind, violation_key, notice_key = _CLIPBOARD_VIOLATIONS[action]
        self.state.clipboard_violation_count += 1
        self._record(kind, violation_key, self._now())
        return ClipboardVerdict(prevent_default=True, notice=self._notify(notice_key), counted=True)

    # Presence

    def on_presence_sample(self, visible: bool, at: Optional[datetime] = None) -> Optional[ViolationEntry]:
        """
        Feed one face-presence sample. An absence lasting the grace window is
        logged once per absence episode.
        """
        if not self.recording or not self.assessment.face_detection_enabled:
            return None

        at = at or self._now()
        if visible:
            self._absent_since = None
            self._absence_reported = False
            return None

        if self._absent_since is None:
            self._absent_since = at
        if self._absence_reported:
            return None

        absent_for = (at - self._absent_since).total_seconds()
        if absent_for < self.assessment.grace_period_seconds:
            return None

        self._absence_reported = True
        return self._record(ViolationKind.NO_FACE, "VIOLATION_NO_FACE", at)

    def on_camera_unavailable(self) -> Optional[ViolationEntry]:
        if not self.recording or not self.assessment.face_detection_enabled:
            return None
        return self._record(ViolationKind.CAMERA_DENIED, "VIOLATION_CAMERA_DENIED", self._now())
