"""
Vertex AI (Google GenAI SDK) judge client
"""

import json
import os
import time

from google import genai
from google.genai import errors as genai_errors
from google.api_core import exceptions as google_exceptions
from google.genai.types import GenerateContentConfig, HttpOptions

from prompt_loop_core.domain.value_objects import JudgeRequest, JudgeResponse
from prompt_loop_core.infrastructure.judge_clients.base import JudgeClient, RetryMixin


def flatten_messages(request: JudgeRequest) -> str:
    """
    Flatten chat messages into a single prompt string

    Image parts are referenced by URL; inline data URLs are replaced with a placeholder.
    """
    sections: list[str] = []
    for message in request.messages:
        content = message["content"]
        if isinstance(content, str):
            text = content
        else:
            pieces = []
            for part in content:
                if part.get("type") == "image_url":
                    url = part["image_url"]["url"]
                    pieces.append("[Image]" if url.startswith("data:") else f"[Image: {url}]")
                else:
                    pieces.append(part.get("text", ""))
            text = "\n".join(pieces)

        if message["role"] == "system":
            sections.append(text)
        else:
            sections.append(f"{message['role'].capitalize()}: {text}")

    if request.response_schema is not None:
        sections.append(
            "Respond ONLY with a JSON object matching this JSON schema:\n"
            + json.dumps(request.response_schema, ensure_ascii=False)
        )
    return "\n\n".join(sections)


class VertexAIJudgeClient(RetryMixin, JudgeClient):
    """Judge client using Google GenAI SDK (via Vertex AI); synchronous only"""

    provider_name = "vertex_ai"

    def __init__(
        self,
        model_name: str,
        project_id: str | None = None,
        location: str | None = None,
        timeout_seconds: int = 60,
    ):
        """
        Args:
            model_name: Model name (e.g. gemini-2.5-pro, gemini-2.5-flash)
            project_id: GCP project ID (falls back to environment variable if not specified)
            location: Region (falls back to "global")
            timeout_seconds: Timeout in seconds (default: 60)
        """
        self.model_name = model_name
        self.project_id = project_id or os.environ.get("GCP_PROJECT_ID")
        self.location = location or os.environ.get("GCP_LOCATION", "global")
        self.timeout_seconds = timeout_seconds

        if not self.project_id:
            raise ValueError("GCP_PROJECT_ID is not set")

        # Timeout is configured via HttpOptions (milliseconds)
        self.client = genai.Client(
            vertexai=True,
            project=self.project_id,
            location=self.location,
            http_options=HttpOptions(timeout=timeout_seconds * 1000),
        )

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
        config = GenerateContentConfig(
            temperature=0.0,
            response_mime_type="application/json" if request.response_schema is not None else None,
        )
        prompt = flatten_messages(request)

        def _call():
            start_time = time.time()
            response = self.client.models.generate_content(
                model=self.model_name,
                contents=prompt,
                config=config,
            )
            end_time = time.time()

            latency_ms = int((end_time - start_time) * 1000)

            # Retrieve token usage
            input_tokens = 0
            output_tokens = 0
            if hasattr(response, "usage_metadata") and response.usage_metadata:
                input_tokens = getattr(response.usage_metadata, "prompt_token_count", 0) or 0
                output_tokens = getattr(response.usage_metadata, "candidates_token_count", 0) or 0

            return JudgeResponse(
                text=(response.text or "").strip(),
                latency_ms=latency_ms,
                model_name=self.model_name,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        return self._call_once(
            _call,
            retryable_exceptions=(
                google_exceptions.DeadlineExceeded,
                google_exceptions.ServiceUnavailable,
                google_exceptions.ResourceExhausted,
                genai_errors.ServerError,
            ),
        )
