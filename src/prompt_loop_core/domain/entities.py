"""
Domain Entities

Defines the persisted objects of the evaluation loop: monitored endpoints,
their execution records, prompt versions, insights, challengers and batch jobs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from prompt_loop_core.domain.constants import (
    BATCH_TRANSITIONS,
    PRODUCTION_ENVIRONMENT,
    BatchJobStatus,
    EvaluationStatus,
    OutputStyle,
    ProblemType,
    RecordStatus,
)
from prompt_loop_core.domain.errors import StateConflictError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MonitoredEndpoint:
    """A named prompt/model configuration under observation"""
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    problem_type: ProblemType = ProblemType.GENERATION
    id: int | None = None
    slug: str = ""
    active: bool = True
    is_reviewer: bool = False
    is_optimized: bool = False
    output_style: OutputStyle = OutputStyle.LLM
    flags: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None

    def __post_init__(self):
        self.problem_type = ProblemType.parse(self.problem_type)
        self.output_style = OutputStyle(self.output_style)
        if not self.slug:
            self.slug = self.name.lower().replace(" ", "-")

    @property
    def prompt(self) -> str:
        return self.parameters.get("prompt") or ""


@dataclass
class ActivationPolicy:
    """Per-evaluator sampling settings"""
    backlog_threshold: int = 0
    sampling_percentage: float = 100.0
    per_cycle_limit: int = 5

    def __post_init__(self):
        if not 0 <= self.sampling_percentage <= 100:
            raise ValueError("sampling_percentage must be between 0 and 100")
        if self.per_cycle_limit < 0:
            raise ValueError("per_cycle_limit must be non-negative")
        if self.backlog_threshold < 0:
            raise ValueError("backlog_threshold must be non-negative")


@dataclass
class EvaluatorAssignment:
    """Links a monitored endpoint to the evaluator endpoint that judges it"""
    endpoint_id: int
    evaluator_id: int
    policy: ActivationPolicy = field(default_factory=ActivationPolicy)


@dataclass
class ExecutionRecord:
    """One captured input/output pair produced by a monitored endpoint"""
    endpoint_id: int
    input: Any
    output: Any
    id: int | None = None
    actual: dict[str, Any] | None = None
    processed: bool = False
    auto_evaluation_processed: bool = False
    status: RecordStatus = RecordStatus.PENDING
    environment: str = PRODUCTION_ENVIRONMENT
    batch_id: str | None = None
    evaluation_status: EvaluationStatus | None = None
    origin_record_id: int | None = None
    claimed_by: str | None = None
    claim_expires_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None

    def __post_init__(self):
        self.status = RecordStatus(self.status)
        if self.evaluation_status is not None:
            self.evaluation_status = EvaluationStatus(self.evaluation_status)

    def is_claimable(self, now: datetime) -> bool:
        if self.claimed_by is None:
            return True
        return self.claim_expires_at is not None and self.claim_expires_at <= now


@dataclass
class BatchJob:
    """Asynchronous provider job grouping many (record, rubric) requests"""
    id: str
    evaluator_id: int
    problem_type: ProblemType
    record_ids: list[int] = field(default_factory=list)
    request_count: int = 0
    status: BatchJobStatus = BatchJobStatus.SUBMITTED
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def __post_init__(self):
        self.problem_type = ProblemType.parse(self.problem_type)
        self.status = BatchJobStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return not BATCH_TRANSITIONS[self.status]

    def transition(self, new_status: BatchJobStatus) -> None:
        """Move to new_status; re-entering the current state is a no-op"""
        new_status = BatchJobStatus(new_status)
        if new_status == self.status:
            return
        if new_status not in BATCH_TRANSITIONS[self.status]:
            raise StateConflictError(
                f"Batch job {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        if self.is_terminal:
            self.completed_at = utcnow()


@dataclass
class Insight:
    """Root-cause/solution finding derived from one incorrect record"""
    endpoint_id: int
    problem: str
    solution: str
    description: str
    version_tag: str
    record_snapshot: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None


@dataclass
class PromptVersion:
    """Numbered snapshot of an endpoint's prompt text"""
    endpoint_id: int
    version: str
    prompt: str
    active_version: bool = False
    id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None


@dataclass
class DeployHistoryEntry:
    endpoint_id: int
    version: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ChallengerAssignment:
    """Traffic split between a base endpoint and its challenger"""
    base_endpoint_id: int
    challenger_endpoint_id: int
    percentage: int = 30
    principal: bool = False
    id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None


@dataclass
class MetricDefinition:
    """A metric series tracked for an endpoint"""
    endpoint_id: int
    name: str
    threshold: float | None = None
    id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None
