"""
Judge client factory

Creates the appropriate client instance from explicit JudgeSettings.
"""

from __future__ import annotations

from prompt_loop_core.loop_config import JudgeSettings
from prompt_loop_core.infrastructure.judge_clients.base import BatchJudgeClient, JudgeClient
from prompt_loop_core.infrastructure.judge_clients.claude_judge import ClaudeJudgeClient
from prompt_loop_core.infrastructure.judge_clients.openai_judge import OpenAIJudgeClient
from prompt_loop_core.infrastructure.judge_clients.vertex_ai_judge import VertexAIJudgeClient


def create_judge_client(settings: JudgeSettings) -> JudgeClient:
    """
    Create the appropriate client for the configured provider

    Args:
        settings: Provider, model and credentials

    Returns:
        JudgeClient: The client instance

    Raises:
        ValueError: For an unknown provider
    """
    provider = settings.provider.lower()
    if provider == "openai":
        return OpenAIJudgeClient(
            settings.model,
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            max_tokens=settings.max_tokens,
        )
    elif provider == "anthropic":
        return ClaudeJudgeClient(
            settings.model,
            api_key=settings.api_key,
            timeout_seconds=settings.timeout_seconds,
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            max_tokens=settings.max_tokens,
        )
    elif provider == "vertex_ai":
        return VertexAIJudgeClient(
            settings.model,
            timeout_seconds=settings.timeout_seconds,
        )
    raise ValueError(f"Unknown judge provider: {settings.provider} (available: openai, anthropic, vertex_ai)")


def create_batch_judge_client(settings: JudgeSettings) -> BatchJudgeClient:
    """Create a client for the batch path; the provider must support batch jobs"""
    client = create_judge_client(settings)
    if not isinstance(client, BatchJudgeClient):
        raise ValueError(f"Provider '{settings.provider}' does not support batch evaluation")
    return client
