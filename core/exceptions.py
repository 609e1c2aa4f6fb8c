class EngineError(Exception):
    """Base class for assessment engine errors."""
    pass


class PersistenceError(EngineError):
    """The persistence gateway could not complete a read or write.

    Treated as transient: autosave retries on its next interval and final
    submission retries with backoff.
    """
    pass


class AssessmentNotFoundError(EngineError):
    pass


class SessionNotFoundError(EngineError):
    pass


class SubmissionFailedError(EngineError):
    """Final submission could not be persisted after all retry attempts."""

    def __init__(self, session_id: str, attempts: int, last_error: Exception = None):
        super().__init__(f"Submission for session {session_id} failed after {attempts} attempts")
        self.session_id = session_id
        self.attempts = attempts
        self.last_error = last_error
