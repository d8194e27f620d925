"""
Domain Value Objects

Defines immutable data structures representing judge requests and responses,
the three judge output shapes, and the reports returned by each engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from prompt_loop_core.domain.constants import BatchJobStatus

# Chat-style message: {"role": ..., "content": str | list[content part]}
Message = dict[str, Any]


@dataclass(frozen=True)
class JudgeRequest:
    """Ordered chat messages plus an optional structured-output schema"""
    messages: list[Message]
    response_schema: dict[str, Any] | None = None
    schema_name: str = "evaluation"

    @property
    def attachment_count(self) -> int:
        count = 0
        for message in self.messages:
            content = message.get("content")
            if isinstance(content, list):
                count += sum(1 for part in content if part.get("type") == "image_url")
        return count


@dataclass
class JudgeResponse:
    """Judge response"""
    text: str
    latency_ms: int
    model_name: str
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class BatchRequest:
    """One request of a provider batch, identified by custom_id"""
    custom_id: str
    request: JudgeRequest


@dataclass
class ProviderBatchStatus:
    """Provider-side view of a batch job"""
    job_id: str
    status: BatchJobStatus
    provider_status: str
    total: int = 0
    completed: int = 0
    failed: int = 0


@dataclass
class RubricScore:
    """One rubric's structured judgment (score on a 0-10 scale)"""
    evaluator: str
    score: float
    analysis: str = ""
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "evaluator": self.evaluator,
            "score": self.score,
            "analysis": self.analysis,
            "errors": list(self.errors),
        }


@dataclass
class RubricListJudgment:
    """Scores from a per-problem-type rubric pipeline"""
    evaluations: list[RubricScore]


@dataclass
class ClassificationJudgment:
    """Expected vs. predicted class as derived by the judge"""
    model_output: Any
    expected_output: Any
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMTriadJudgment:
    """Relevance / coherence / correctness scores on a 0-10 scale"""
    relevance: float
    coherence: float
    correctness: float
    extra: dict[str, Any] = field(default_factory=dict)


Judgment = Union[RubricListJudgment, ClassificationJudgment, LLMTriadJudgment]


@dataclass
class EvaluationOutcome:
    """Result of evaluating a single record synchronously"""
    record_id: int
    processed: bool
    correct: bool | None = None
    attempts: int = 0
    error: str | None = None


@dataclass
class CycleReport:
    """Summary of one activation cycle for one evaluator"""
    endpoint_id: int
    evaluator_id: int
    sampled: int = 0
    processed: int = 0
    failed: int = 0
    batch_id: str | None = None
    side_effect_failures: int = 0


@dataclass
class BatchReconcileResult:
    """Result of polling one batch job"""
    job_id: str
    status: str
    processed: int = 0
    success: int = 0
    failed: int = 0


@dataclass
class SweepSummary:
    """Aggregate of one pending-batch sweep"""
    total_batches: int = 0
    completed_batches: int = 0
    pending_batches: int = 0
    total_entries: int = 0
    processed_entries: int = 0


@dataclass
class HealthCheckResult:
    """Health check result"""
    model_name: str
    success: bool
    latency_ms: int | None
    error: str | None
