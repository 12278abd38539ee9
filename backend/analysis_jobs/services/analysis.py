"""Analysis execution shared by both schedulers.

Runs the four labelled steps of one analysis attempt and reports progress
through a callback. It does not touch job status: claiming, completing and
failing jobs is the scheduler's business.
"""
import logging
from typing import Awaitable, Callable, Optional, Protocol

from analysis_jobs.errors import (
    PromptPreparationError,
    ProviderAuthError,
    ProviderError,
    UnsupportedProviderError,
)
from analysis_jobs.services.providers import PROVIDERS, invoke_analysis
from analysis_jobs.services.templates import prepare_prompts

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], Awaitable[None]]

STEP_PREPARE = (25, "Preparing file data")
STEP_INVOKE = (50, "Running AI analysis")
STEP_VALIDATE = (75, "Validating results")
STEP_SAVE = (100, "Saving results")


class AnalysisInput(Protocol):
    """What the executor needs from a job record or a queue envelope."""
    template_id: str
    model_id: str
    provider: str
    file_content: str
    api_key: str


def safe_error_message(e: BaseException, fallback: str = "Analysis interrupted") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions produce an empty str(e). This helper falls back to the
    exception class name.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg


def is_retryable(exc: BaseException) -> bool:
    """Whether another attempt could succeed."""
    if isinstance(exc, ProviderError):
        return exc.retryable
    if isinstance(exc, PromptPreparationError):
        return False
    return True


def describe_failure(exc: BaseException, attempts: int) -> str:
    """User-facing error text for a job that will not be retried again."""
    message = safe_error_message(exc)
    if isinstance(exc, ProviderAuthError):
        return f"Failed to analyze conversation: {message}"
    if isinstance(exc, (UnsupportedProviderError, PromptPreparationError)):
        return f"Failed to analyze conversation. Error: {message}"
    return (
        f"Failed to analyze conversation after {attempts} attempts. Error: {message}. "
        "Please check your API keys and provider settings."
    )


class AnalysisExecutor:
    """Executes one analysis attempt for a job.

    ``invoke`` is the provider call; tests pass a fake in its place.
    """

    def __init__(self, invoke=invoke_analysis, provider_timeout: Optional[float] = None):
        self._invoke = invoke
        self._provider_timeout = provider_timeout

    async def run(self, job: AnalysisInput, progress: Optional[ProgressCallback] = None) -> dict:
        async def report(step: tuple[int, str]):
            if progress is not None:
                await progress(*step)

        # Step 1: Prepare input
        await report(STEP_PREPARE)
        if job.provider not in PROVIDERS:
            raise UnsupportedProviderError(f"Unsupported provider: {job.provider}", provider=job.provider)
        if not job.api_key:
            raise ProviderAuthError(
                f"No API key found for {job.provider}. Please check your settings and try again.",
                provider=job.provider,
            )
        system_prompt, user_prompt = prepare_prompts(job.template_id, job.file_content)

        # Step 2: Invoke provider
        await report(STEP_INVOKE)
        kwargs = {"timeout": self._provider_timeout} if self._provider_timeout else {}
        result = await self._invoke(
            job.provider, job.model_id, system_prompt, user_prompt, job.api_key, **kwargs,
        )

        # Step 3: Validate
        await report(STEP_VALIDATE)
        if not result or not isinstance(result, dict):
            raise ProviderError("No analysis data returned", provider=job.provider)

        # Step 4: Persist (the scheduler writes the result)
        await report(STEP_SAVE)
        return result
