"""
duel_engine/exceptions.py
Typed exceptions for the scheduling engine

Taxonomy:
- Caller-input errors (InvalidSpecError, ForbiddenError, NotFoundError):
  returned synchronously, no partial state created
- Invariant violations (TournamentStateError, ChallengeStateConflict):
  rejected locally, persisted state untouched
- Transient external failures (SubmissionSourceError): retried next tick
"""


class DuelEngineError(Exception):
    """Base exception for the engine"""
    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str = None, status_code: int = None):
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)


class InvalidSpecError(DuelEngineError):
    """
    Raised when a challenge or tournament request is malformed.

    Examples:
    - Unsupported challenge length
    - Too few or too many participants
    - Participant already enrolled in another active challenge
    """
    status_code = 400
    code = "INVALID_SPEC"

    def __init__(self, message: str = "Invalid request", code: str = None):
        super().__init__(message, code or self.code, self.status_code)


class ForbiddenError(DuelEngineError):
    """
    Raised when the requester is not allowed to act on the resource.
    """
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Action forbidden"):
        super().__init__(message, self.code, self.status_code)


class NotFoundError(DuelEngineError):
    """
    Raised when requested resource doesn't exist (or is no longer active).
    """
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, self.code, self.status_code)


class TournamentStateError(DuelEngineError):
    """Tournament operation not allowed in the current state."""
    status_code = 409
    code = "INVALID_STATE"

    def __init__(self, message: str, code: str = None):
        super().__init__(message, code or self.code, self.status_code)


class ChallengeStateConflict(DuelEngineError):
    """Challenge left ACTIVE concurrently; the guarded transition did not apply."""
    status_code = 409
    code = "STATE_TRANSITION_INVALID"

    def __init__(self, challenge_id: str):
        self.challenge_id = challenge_id
        super().__init__(
            f"Challenge {challenge_id} is no longer active",
            self.code,
            self.status_code
        )


class SubmissionSourceError(DuelEngineError):
    """External submission source failed (timeout, error status, rate limit)."""
    status_code = 503
    code = "SERVICE_UNAVAILABLE"

    def __init__(self, message: str):
        super().__init__(message, self.code, self.status_code)
