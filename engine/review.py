from enum import Enum
from typing import List, Sequence

from pydantic import BaseModel, ConfigDict, Field


class ReviewState(str, Enum):
    REVIEWING = "reviewing"
    WARNED = "warned"
    SUBMITTING = "submitting"


class ReviewDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: ReviewState
    unanswered: List[str] = Field(default_factory=list)

    @property
    def proceed(self) -> bool:
        return self.state == ReviewState.SUBMITTING


class ReviewGate:
    """
    Two-step confirmation in front of a manual submission.

    reviewing --submit, unanswered > 0--> warned --submit again--> submitting

    The second attempt only goes through when the unanswered set is the one
    the candidate was warned about; a different non-empty set warns again.
    """

    def __init__(self):
        self.state = ReviewState.REVIEWING
        self._warned_for: frozenset = frozenset()

    def request_submit(self, unanswered: Sequence[str]) -> ReviewDecision:
        pending = list(unanswered)

        if self.state == ReviewState.SUBMITTING:
            return ReviewDecision(state=self.state, unanswered=pending)

        if not pending:
            self.state = ReviewState.SUBMITTING
            return ReviewDecision(state=self.state)

        if self.state == ReviewState.WARNED and frozenset(pending) == self._warned_for:
            self.state = ReviewState.SUBMITTING
            return ReviewDecision(state=self.state, unanswered=pending)

        self.state = ReviewState.WARNED
        self._warned_for = frozenset(pending)
        return ReviewDecision(state=self.state, unanswered=pending)

    def cancel(self):
        """Candidate chose to continue answering."""
        if self.state == ReviewState.WARNED:
            self.state = ReviewState.REVIEWING
            self._warned_for = frozenset()

    def force(self) -> ReviewDecision:
        """Timeout or integrity knockout: skip confirmation."""
        self.state = ReviewState.SUBMITTING
        return ReviewDecision(state=self.state)
