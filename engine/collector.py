from enum import Enum
from typing import Callable, List, Optional

from core.clock import utcnow
from core.logger import logger
from engine.state import Answer, AssessmentConfig, Progress, SessionState


class Direction(str, Enum):
    NEXT = "next"
    PREVIOUS = "previous"


class QuestionStatus(str, Enum):
    ANSWERED = "answered"
    REVIEW = "review"
    UNANSWERED = "unanswered"


class AnswerCollector:
    """
    Applies candidate input to the session: answers, review flags and
    navigation. Invalid input is dropped, never raised, so a bad request can
    not corrupt the session.
    """

    def __init__(
        self,
        state: SessionState,
        assessment: AssessmentConfig,
        now: Callable = utcnow,
        input_open: Optional[Callable[[], bool]] = None,
    ):
        self.state = state
        self.assessment = assessment
        self._now = now
        self._input_open = input_open

    def _accepts_input(self) -> bool:
        if self.state.completed:
            return False
        if self._input_open is not None and not self._input_open():
            return False
        return True

    def set_answer(self, question_id: str, answer: Answer) -> bool:
        """Store (last write wins) or clear, when blank, the answer for a question."""
        if not self._accepts_input():
            logger.debug("Answer rejected, input closed", session_id=self.state.session_id, question_id=question_id)
            return False
        if not self.assessment.has_question(question_id):
            logger.debug("Answer rejected, unknown question", session_id=self.state.session_id, question_id=question_id)
            return False

        if answer.is_blank:
            if self.state.answers.pop(question_id, None) is None:
                return False
        else:
            if self.state.answers.get(question_id) == answer:
                return False
            self.state.answers[question_id] = answer

        self.state.touch(self._now())
        return True

    def toggle_review(self, question_id: str) -> Optional[bool]:
        """Flip the review flag. Returns the new membership, None if rejected."""
        if not self._accepts_input() or not self.assessment.has_question(question_id):
            return None

        if question_id in self.state.review_marks:
            self.state.review_marks.discard(question_id)
            marked = False
        else:
            self.state.review_marks.add(question_id)
            marked = True

        self.state.touch(self._now())
        return marked

    def navigate(self, direction: Optional[Direction] = None, index: Optional[int] = None) -> int:
        """Move to the next/previous question or jump to an index, clamped to the question range."""
        current = self.state.current_question_index
        if not self._accepts_input() or self.assessment.total_questions == 0:
            return current

        if index is not None:
            target = index
        elif direction == Direction.NEXT:
            target = current + 1
        elif direction == Direction.PREVIOUS:
            target = current - 1
        else:
            return current

        target = max(0, min(target, self.assessment.total_questions - 1))
        if target != current:
            self.state.current_question_index = target
            self.state.touch(self._now())
        return target

    def progress(self) -> Progress:
        # Always derived from the live maps
        question_ids = self.assessment.question_ids
        answered = sum(1 for qid in question_ids if qid in self.state.answers)
        return Progress(
            answered_count=answered,
            total=len(question_ids),
            unanswered_count=len(question_ids) - answered,
            review_count=sum(1 for qid in question_ids if qid in self.state.review_marks),
            current_question_index=self.state.current_question_index,
        )

    def question_status(self, question_id: str) -> QuestionStatus:
        if question_id in self.state.review_marks:
            return QuestionStatus.REVIEW
        if question_id in self.state.answers:
            return QuestionStatus.ANSWERED
        return QuestionStatus.UNANSWERED

    def unanswered_question_ids(self) -> List[str]:
        return [qid for qid in self.assessment.question_ids if qid not in self.state.answers]
