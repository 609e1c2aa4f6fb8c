class Messages:
    """Candidate-facing notice texts."""

    _TEXTS = {
        "CLIPBOARD_BLOCKED": "Copy-paste is disabled during the assessment",
        "CUT_BLOCKED": "Cut operation is disabled during the assessment",
        "CONTEXT_MENU_BLOCKED": "Right-click is disabled during the assessment",
        "TAB_SWITCH_LIMIT": "Maximum tab switches reached. Acknowledge the warning to continue.",
        "SUBMISSION_RETRYING": "Your submission is being retried",
        "TIME_UP": "Time's up! Your assessment has been automatically submitted.",
        "TIME_UP_MANUAL": "Time's up! Please submit your assessment.",
        "FORCED_SUBMIT": "Your assessment has been automatically submitted.",
        # Violation log entries
        "VIOLATION_TAB_SWITCH": "Tab switch detected at {time}",
        "VIOLATION_COPY": "Copy attempt detected at {time}",
        "VIOLATION_CUT": "Cut attempt detected at {time}",
        "VIOLATION_PASTE": "Paste attempt detected at {time}",
        "VIOLATION_NO_FACE": "Face not detected - please ensure your face is visible ({time})",
        "VIOLATION_CAMERA_DENIED": "Camera access denied ({time})",
    }

    @classmethod
    def get(cls, key: str) -> str:
        return cls._TEXTS.get(key, key)
