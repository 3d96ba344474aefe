"""
Exception hierarchy for ADAPT.

Every error carries a machine-readable ``code`` that the HTTP layer
returns to clients unchanged.
"""


class AdaptError(Exception):
    """Base exception for all ADAPT errors."""
    code = "ADAPT_ERROR"

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.details = details


class ValidationError(AdaptError):
    """Raised for malformed requests. Nothing is written."""
    code = "VALIDATION_ERROR"


class NotFoundError(AdaptError):
    """Raised when a course, step, enrollment or session does not exist."""
    code = "NOT_FOUND"


class EpisodeClosedError(ValidationError):
    """Raised when an answer is submitted for an episode that already ended."""
    code = "EPISODE_CLOSED"


class RetryOwedError(ValidationError):
    """Raised when advancing past a step whose episode still owes a retry."""
    code = "RETRY_OWED"


class InvalidPhaseError(ValidationError):
    """Raised when a roleplay operation does not fit the session phase."""
    code = "INVALID_PHASE"


class LearnerLimitError(AdaptError):
    """Raised when a course already holds its maximum number of learners."""
    code = "LEARNER_LIMIT_REACHED"


class SessionExpiredError(AdaptError):
    """Raised when a roleplay session idled past its timeout."""
    code = "SESSION_EXPIRED"


class StalenessError(AdaptError):
    """Base for compare-and-set conflicts. Safe to retry with fresh state."""
    code = "STALE"


class StaleIndexError(StalenessError):
    """Raised when the caller's step index differs from the enrollment's."""
    code = "STALE_INDEX"


class StaleTurnError(StalenessError):
    """Raised when a roleplay transcript changed underneath the caller."""
    code = "STALE_TURN"


class DuplicateAttemptError(StalenessError):
    """Raised when a concurrent submission already recorded this attempt."""
    code = "DUPLICATE_ATTEMPT"


class AIError(AdaptError):
    """Base exception for text-generation failures."""
    code = "AI_ERROR"


class AITimeoutError(AIError):
    """Raised when a generation call exceeds the hard timeout."""
    code = "AI_TIMEOUT"


class AIUpstreamError(AIError):
    """Raised when the generation service fails or is unreachable."""
    code = "AI_UPSTREAM_ERROR"


class AIInvalidOutputError(AIError):
    """Raised when generated output fails schema validation."""
    code = "AI_INVALID_OUTPUT"


class StorageError(AdaptError):
    """Raised when the persistence store is unavailable."""
    code = "STORAGE_UNAVAILABLE"
