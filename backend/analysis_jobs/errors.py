"""Exception taxonomy for the analysis job pipeline.

Store errors (NotFoundError, PersistenceError) come from the job record
store. Provider errors carry a ``retryable`` flag that the workers use to
decide between backoff-and-retry and failing fast.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    pass


class NotFoundError(PipelineError):
    """Record absent, or not owned by the caller."""
    pass


class PersistenceError(PipelineError):
    """The database could not be reached or the write failed."""
    pass


class PromptPreparationError(PipelineError):
    """The analysis prompt could not be built from the job input."""
    pass


class ProviderError(PipelineError):
    """Failure talking to an external AI provider."""

    retryable = True

    def __init__(self, message: str, provider: Optional[str] = None):
        self.message = message
        self.provider = provider
        super().__init__(message)


class UnsupportedProviderError(ProviderError):
    retryable = False


class ProviderAuthError(ProviderError):
    """The provider rejected the credential. Retrying will not help."""

    retryable = False


class ProviderRateLimitError(ProviderError):
    retryable = True


class ProviderTimeoutError(ProviderError, TimeoutError):
    """Raised when a provider call exceeds the configured timeout."""

    retryable = True


class MalformedResponseError(ProviderError):
    """Provider text contained no usable JSON object.

    Handled inside the response parser by returning the fallback result.
    """

    retryable = False
