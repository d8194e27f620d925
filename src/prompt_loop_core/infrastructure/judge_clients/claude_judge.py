"""
Anthropic Claude judge client

Supports single completions and the Message Batches API.
"""

import json
import os
import time

from anthropic import Anthropic, APIConnectionError, APITimeoutError, InternalServerError, RateLimitError

from prompt_loop_core.domain.constants import BatchJobStatus
from prompt_loop_core.domain.value_objects import (
    BatchRequest,
    JudgeRequest,
    JudgeResponse,
    Message,
    ProviderBatchStatus,
)
from prompt_loop_core.infrastructure.judge_clients.base import BatchJudgeClient, RetryMixin

_RETRYABLE = (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)


def _image_block(url: str) -> dict:
    """Convert an image URL or data URL into an Anthropic image block"""
    if url.startswith("data:") and ";base64," in url:
        header, data = url.split(",", 1)
        media_type = header[len("data:"):].split(";", 1)[0] or "image/png"
        return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
    return {"type": "image", "source": {"type": "url", "url": url}}


def _convert_content(content) -> str | list[dict]:
    if isinstance(content, str):
        return content
    blocks = []
    for part in content:
        if part.get("type") == "image_url":
            blocks.append(_image_block(part["image_url"]["url"]))
        else:
            blocks.append({"type": "text", "text": part.get("text", "")})
    return blocks


def _content_text(content) -> str:
    if isinstance(content, str):
        return content
    return "\n".join(part.get("text", "") for part in content if part.get("type") == "text")


def to_anthropic_params(request: JudgeRequest, model_name: str, max_tokens: int) -> dict:
    """
    Split chat messages into Anthropic's system string and message list

    A structured-output schema is enforced through the system prompt since
    the Messages API has no response_format parameter.
    """
    system_parts: list[str] = []
    messages: list[Message] = []
    for message in request.messages:
        if message["role"] == "system":
            system_parts.append(_content_text(message["content"]))
        else:
            messages.append({"role": message["role"], "content": _convert_content(message["content"])})

    if request.response_schema is not None:
        system_parts.append(
            "Respond ONLY with a JSON object matching this JSON schema, with no other text:\n"
            + json.dumps(request.response_schema, ensure_ascii=False)
        )

    params = {
        "model": model_name,
        "max_tokens": max_tokens,
        "temperature": 0.0,
        "messages": messages,
    }
    if system_parts:
        params["system"] = "\n\n".join(system_parts)
    return params


class ClaudeJudgeClient(RetryMixin, BatchJudgeClient):
    """Judge client using the Anthropic API"""

    provider_name = "anthropic"

    def __init__(
        self,
        model_name: str,
        api_key: str | None = None,
        timeout_seconds: int = 60,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        max_tokens: int = 2048,
    ):
        """
        Args:
            model_name: Model name (e.g. claude-sonnet-4-5-20250929)
            api_key: Anthropic API key (falls back to environment variable if not specified)
            timeout_seconds: Request timeout in seconds (default: 60)
            max_retries: Attempts for batch job calls (default: 3)
            retry_delay_seconds: Base delay of the exponential backoff
            max_tokens: Maximum number of tokens (default: 2048)
        """
        self.model_name = model_name
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.max_tokens = max_tokens

        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY is not set")

        self.client = Anthropic(api_key=self.api_key, timeout=timeout_seconds, max_retries=0)

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
        params = to_anthropic_params(request, self.model_name, self.max_tokens)

        def _call():
            start_time = time.time()
            response = self.client.messages.create(**params)
            end_time = time.time()

            latency_ms = int((end_time - start_time) * 1000)
            output = "".join(
                block.text for block in response.content if getattr(block, "type", "") == "text"
            ).strip()

            # Retrieve token usage
            input_tokens = getattr(response.usage, "input_tokens", 0) or 0
            output_tokens = getattr(response.usage, "output_tokens", 0) or 0

            return JudgeResponse(
                text=output,
                latency_ms=latency_ms,
                model_name=self.model_name,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        return self._call_once(_call, retryable_exceptions=_RETRYABLE)

    def submit_batch(self, requests: list[BatchRequest], completion_window: str = "24h") -> str:
        # Message batches always expire after 24 hours; completion_window is accepted for parity
        batch_requests = [
            {
                "custom_id": req.custom_id,
                "params": to_anthropic_params(req.request, self.model_name, self.max_tokens),
            }
            for req in requests
        ]
        batch = self._with_retry(
            lambda: self.client.messages.batches.create(requests=batch_requests),
            retryable_exceptions=_RETRYABLE,
        )
        return batch.id

    def retrieve_batch(self, job_id: str) -> ProviderBatchStatus:
        batch = self._with_retry(
            lambda: self.client.messages.batches.retrieve(job_id),
            retryable_exceptions=_RETRYABLE,
        )
        counts = batch.request_counts
        succeeded = counts.succeeded or 0
        failed = (counts.errored or 0) + (counts.canceled or 0) + (counts.expired or 0)
        total = succeeded + failed + (counts.processing or 0)

        if batch.processing_status == "ended":
            status = BatchJobStatus.COMPLETED if succeeded > 0 else BatchJobStatus.FAILED
        else:
            status = BatchJobStatus.PROCESSING

        return ProviderBatchStatus(
            job_id=job_id,
            status=status,
            provider_status=batch.processing_status,
            total=total,
            completed=succeeded,
            failed=failed,
        )

    def fetch_batch_results(self, job_id: str) -> dict[str, str]:
        entries = self._with_retry(
            lambda: list(self.client.messages.batches.results(job_id)),
            retryable_exceptions=_RETRYABLE,
        )
        results: dict[str, str] = {}
        for entry in entries:
            if entry.result.type != "succeeded":
                continue
            results[entry.custom_id] = "".join(
                block.text for block in entry.result.message.content
                if getattr(block, "type", "") == "text"
            )
        return results
