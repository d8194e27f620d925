"""
OpenAI (and OpenAI-compatible API) judge client

Supports single completions and the Batch API (JSONL upload, one output line per custom_id).
"""

import json
import os
import time

import openai
from openai import OpenAI

from prompt_loop_core.domain.constants import BatchJobStatus
from prompt_loop_core.domain.errors import ParseError, ProviderError
from prompt_loop_core.domain.value_objects import (
    BatchRequest,
    JudgeRequest,
    JudgeResponse,
    ProviderBatchStatus,
)
from prompt_loop_core.infrastructure.judge_clients.base import BatchJudgeClient, RetryMixin

_RETRYABLE = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)

# OpenAI batch statuses -> BatchJobStatus
_BATCH_STATUS_MAP = {
    "validating": BatchJobStatus.SUBMITTED,
    "in_progress": BatchJobStatus.PROCESSING,
    "finalizing": BatchJobStatus.PROCESSING,
    "cancelling": BatchJobStatus.PROCESSING,
    "completed": BatchJobStatus.COMPLETED,
    "failed": BatchJobStatus.FAILED,
    "expired": BatchJobStatus.FAILED,
    "cancelled": BatchJobStatus.FAILED,
}


def build_response_format(request: JudgeRequest) -> dict | None:
    """Translate the request schema into an OpenAI response_format"""
    if request.response_schema is None:
        return None
    return {
        "type": "json_schema",
        "json_schema": {
            "name": request.schema_name,
            "schema": request.response_schema,
            "strict": False,
        },
    }


class OpenAIJudgeClient(RetryMixin, BatchJudgeClient):
    """Judge client using the OpenAI chat completions and batch APIs"""

    provider_name = "openai"

    def __init__(
        self,
        model_name: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: int = 60,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        max_tokens: int = 2048,
    ):
        """
        Args:
            model_name: Model name (e.g. gpt-4o-2024-08-06)
            api_key: OpenAI API key (falls back to OPENAI_API_KEY if not specified)
            base_url: Alternative endpoint for OpenAI-compatible servers
            timeout_seconds: Request timeout in seconds (default: 60)
            max_retries: Attempts for batch job calls (default: 3)
            retry_delay_seconds: Base delay of the exponential backoff
            max_tokens: Maximum number of tokens (default: 2048)
        """
        self.model_name = model_name
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.max_tokens = max_tokens

        api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY is not set")

        # The SDK's own retries are disabled; RetryMixin owns the policy
        self.client = OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=0,
        )

    def _request_body(self, request: JudgeRequest) -> dict:
        body = {
            "model": self.model_name,
            "messages": request.messages,
            "temperature": 0.0,
            "max_tokens": self.max_tokens,
        }
        response_format = build_response_format(request)
        if response_format is not None:
            body["response_format"] = response_format
        return body

    def complete(self, request: JudgeRequest) -> JudgeResponse:
        """
        Send the messages and retrieve the completion

        Args:
            request: Judge request

        Returns:
            JudgeResponse: The judge's response

        Raises:
            ProviderError: If the call fails (one attempt; callers decide on retries)
        """
        def _call():
            start_time = time.time()
            response = self.client.chat.completions.create(**self._request_body(request))
            end_time = time.time()

            latency_ms = int((end_time - start_time) * 1000)
            output = (response.choices[0].message.content or "").strip()

            # Retrieve token usage
            input_tokens = 0
            output_tokens = 0
            if response.usage:
                input_tokens = response.usage.prompt_tokens or 0
                output_tokens = response.usage.completion_tokens or 0

            return JudgeResponse(
                text=output,
                latency_ms=latency_ms,
                model_name=self.model_name,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        return self._call_once(_call, retryable_exceptions=_RETRYABLE)

    def submit_batch(self, requests: list[BatchRequest], completion_window: str = "24h") -> str:
        """Upload the requests as a JSONL file and create the batch"""
        lines = [
            json.dumps({
                "custom_id": req.custom_id,
                "method": "POST",
                "url": "/v1/chat/completions",
                "body": self._request_body(req.request),
            }, ensure_ascii=False)
            for req in requests
        ]
        payload = ("\n".join(lines) + "\n").encode("utf-8")

        def _call():
            uploaded = self.client.files.create(
                file=(f"batch_{int(time.time())}.jsonl", payload),
                purpose="batch",
            )
            batch = self.client.batches.create(
                input_file_id=uploaded.id,
                endpoint="/v1/chat/completions",
                completion_window=completion_window,
            )
            return batch.id

        return self._with_retry(_call, retryable_exceptions=_RETRYABLE)

    def retrieve_batch(self, job_id: str) -> ProviderBatchStatus:
        batch = self._with_retry(
            lambda: self.client.batches.retrieve(job_id),
            retryable_exceptions=_RETRYABLE,
        )
        counts = batch.request_counts
        return ProviderBatchStatus(
            job_id=job_id,
            status=_BATCH_STATUS_MAP.get(batch.status, BatchJobStatus.PROCESSING),
            provider_status=batch.status,
            total=getattr(counts, "total", 0) or 0,
            completed=getattr(counts, "completed", 0) or 0,
            failed=getattr(counts, "failed", 0) or 0,
        )

    def fetch_batch_results(self, job_id: str) -> dict[str, str]:
        """
        Download the output file of a completed batch

        Lines with a non-200 status are omitted; the reconciler treats the
        missing custom ids as failures of the affected record.
        """
        batch = self._with_retry(
            lambda: self.client.batches.retrieve(job_id),
            retryable_exceptions=_RETRYABLE,
        )
        if not batch.output_file_id:
            raise ProviderError(f"Batch {job_id} has no output file", provider=self.provider_name)

        content = self._with_retry(
            lambda: self.client.files.content(batch.output_file_id),
            retryable_exceptions=_RETRYABLE,
        )
        return parse_batch_output(content.text)


def parse_batch_output(text: str) -> dict[str, str]:
    """Parse OpenAI batch output JSONL into {custom_id: message content}"""
    results: dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError as e:
            raise ParseError(f"Malformed batch output line: {line[:200]}") from e
        response = row.get("response") or {}
        if response.get("status_code", 200) != 200 or row.get("error"):
            continue
        choices = (response.get("body") or {}).get("choices") or []
        if not choices:
            continue
        results[row["custom_id"]] = choices[0].get("message", {}).get("content") or ""
    return results
