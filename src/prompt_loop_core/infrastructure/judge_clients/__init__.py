"""
Judge client package

Provides a unified interface to each LLM judge provider.
"""

from prompt_loop_core.infrastructure.judge_clients.base import BatchJudgeClient, JudgeClient
from prompt_loop_core.infrastructure.judge_clients.factory import (
    create_batch_judge_client,
    create_judge_client,
)
from prompt_loop_core.domain.value_objects import JudgeRequest, JudgeResponse

__all__ = [
    "BatchJudgeClient",
    "JudgeClient",
    "JudgeRequest",
    "JudgeResponse",
    "create_batch_judge_client",
    "create_judge_client",
]
