"""Custom exceptions for the test case generation pipeline."""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .ledger import QuotaDecision
    from .models import TokenUsage


class PipelineError(Exception):
    """
    Base exception for pipeline errors.

    ``reason`` is the stable classification recorded on a failed job.
    """
    reason = "PipelineError"

    def describe(self) -> str:
        """Render the error the way it is stored on a failed job."""
        message = str(self) or self.__class__.__doc__.strip().splitlines()[0]
        return f"{self.reason}: {message}"


class ConfigurationError(PipelineError):
    """Raised when configuration is invalid or missing."""
    reason = "ConfigurationError"


# ==================== Ingestion ====================

class UnsupportedFormatError(PipelineError):
    """Raised when a document's media type cannot be ingested."""
    reason = "UnsupportedFormat"

    def __init__(self, media_type: str):
        self.media_type = media_type
        super().__init__(f"Unsupported media type: {media_type}")


class DocumentExtractionError(PipelineError):
    """Raised when a supported document cannot be read (corrupt or encrypted)."""
    reason = "ExtractionFailed"


# ==================== Prompt ====================

class PromptTooLargeError(PipelineError):
    """Raised when the composed messages exceed the character ceiling."""
    reason = "PromptTooLarge"

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Prompt is {size} characters, limit is {limit}")


# ==================== Provider ====================

class ProviderError(PipelineError):
    """
    Raised when a provider call fails.

    Attributes:
        usage: Token counters if the provider reported them before failing
        status_code: HTTP status returned by the provider, when there was one
    """
    reason = "ProviderError"

    def __init__(
        self,
        message: str,
        usage: Optional["TokenUsage"] = None,
        status_code: Optional[int] = None
    ):
        self.usage = usage
        self.status_code = status_code
        super().__init__(message)


class InvalidRequestError(ProviderError):
    """Raised when a completion request fails local validation."""
    reason = "InvalidRequest"


class NetworkError(ProviderError):
    """Raised on connection-level failures."""
    reason = "NetworkError"


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds its deadline."""
    reason = "Timeout"


class RateLimitedError(ProviderError):
    """Raised when the provider signals throttling."""
    reason = "RateLimited"


class AuthError(ProviderError):
    """Raised when the provider rejects the credentials."""
    reason = "AuthError"


class ProviderServerError(ProviderError):
    """Raised on 5xx-class provider responses."""
    reason = "ProviderServerError"


class UnexpectedProviderError(ProviderError):
    """Raised for any provider failure that fits no other class."""
    reason = "UnexpectedError"


# ==================== Response ====================

class NoStructuredContentError(PipelineError):
    """Raised when model output contains no ``{ ... }`` span."""
    reason = "NoStructuredContent"


class MalformedResponseError(PipelineError):
    """Raised when the candidate JSON cannot be parsed into a test case list."""
    reason = "MalformedResponse"

    def __init__(self, message: str, raw_response: str = ""):
        self.raw_response = raw_response
        super().__init__(message)


# ==================== Lifecycle ====================

class QuotaExceededError(PipelineError):
    """Raised at admission when a requester is over a monthly ceiling."""
    reason = "QuotaExceeded"

    def __init__(self, decision: "QuotaDecision"):
        self.decision = decision
        super().__init__(decision.reason or "Monthly quota exceeded")


class DeadlineExceededError(PipelineError):
    """Raised when a job does not finish within its wall-clock ceiling."""
    reason = "DeadlineExceeded"


class InvalidTransitionError(PipelineError):
    """Raised when a job status change would move backward or sideways."""
    reason = "InvalidTransition"

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")


class JobNotFoundError(PipelineError):
    """Raised when a job id is unknown."""
    reason = "JobNotFound"


class RequirementNotFoundError(PipelineError):
    """Raised when a requirement id is unknown."""
    reason = "RequirementNotFound"
