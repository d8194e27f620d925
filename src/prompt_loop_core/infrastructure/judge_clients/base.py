"""
Judge client base classes and retry mixin

Defines the abstract base classes inherited by all judge clients
and the RetryMixin that consolidates shared retry logic.
"""

import time
from abc import ABC, abstractmethod

from prompt_loop_core.domain.errors import PromptLoopError, ProviderError
from prompt_loop_core.domain.value_objects import (
    BatchRequest,
    JudgeRequest,
    JudgeResponse,
    ProviderBatchStatus,
)


class RetryMixin:
    """Exponential backoff retry. Subclasses set self.max_retries."""

    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    provider_name: str = "unknown"

    def _with_retry(self, fn, retryable_exceptions=(Exception,), attempts: int | None = None):
        """
        Execute with exponential backoff retry.

        Args:
            fn: The function to retry (a callable with no arguments)
            retryable_exceptions: Tuple of exception types eligible for retry
            attempts: Overrides self.max_retries for this call

        Returns:
            The return value of fn()

        Raises:
            ValueError: If the number of attempts is less than 1
            ProviderError: Wrapping the last exception if max retries are exceeded,
                or any non-retryable provider exception
        """
        attempts = self.max_retries if attempts is None else attempts
        if attempts < 1:
            raise ValueError("max_retries must be at least 1.")

        last_exception: Exception | None = None
        for attempt in range(attempts):
            try:
                return fn()
            except PromptLoopError:
                raise
            except retryable_exceptions as e:
                last_exception = e
                if attempt < attempts - 1:
                    time.sleep(self.retry_delay_seconds * 2 ** attempt)
            except Exception as e:
                raise ProviderError(str(e), provider=self.provider_name) from e

        assert last_exception is not None
        raise ProviderError(str(last_exception), provider=self.provider_name) from last_exception

    def _call_once(self, fn, retryable_exceptions=(Exception,)):
        """Single attempt; the caller owns the retry policy for synchronous judge calls"""
        return self._with_retry(fn, retryable_exceptions=retryable_exceptions, attempts=1)


class JudgeClient(ABC):
    """Abstract base class for synchronous judge clients"""

    model_name: str

    @abstractmethod
    def complete(self, request: JudgeRequest) -> JudgeResponse:
        """Send the chat messages and retrieve one completion"""
        pass


class BatchJudgeClient(JudgeClient):
    """Judge client that also supports provider-hosted batch jobs"""

    @abstractmethod
    def submit_batch(self, requests: list[BatchRequest], completion_window: str = "24h") -> str:
        """Submit many requests as one job and return the provider job id"""
        pass

    @abstractmethod
    def retrieve_batch(self, job_id: str) -> ProviderBatchStatus:
        """Query the provider for the job status"""
        pass

    @abstractmethod
    def fetch_batch_results(self, job_id: str) -> dict[str, str]:
        """Download a completed job's output as {custom_id: completion text}"""
        pass
