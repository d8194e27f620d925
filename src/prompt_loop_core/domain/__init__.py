"""
Domain Layer

Defines constants, entities, value objects and errors that form the core of
the evaluation loop. Has no dependencies on external libraries.
"""

from prompt_loop_core.domain.constants import (
    ACCURACY_RUBRIC_KEY,
    CORRECT_SCORE_THRESHOLD,
    DEFAULT_CHALLENGER_PERCENTAGE,
    PRODUCTION_ENVIRONMENT,
    BatchJobStatus,
    EvaluationStatus,
    OutputStyle,
    ProblemType,
    RecordStatus,
)
from prompt_loop_core.domain.entities import (
    ActivationPolicy,
    BatchJob,
    ChallengerAssignment,
    DeployHistoryEntry,
    EvaluatorAssignment,
    ExecutionRecord,
    Insight,
    MetricDefinition,
    MonitoredEndpoint,
    PromptVersion,
)
from prompt_loop_core.domain.errors import (
    NotFoundError,
    ParseError,
    PolicyNotMetError,
    PromptLoopError,
    ProviderError,
    StateConflictError,
)
from prompt_loop_core.domain.value_objects import (
    BatchReconcileResult,
    BatchRequest,
    ClassificationJudgment,
    CycleReport,
    EvaluationOutcome,
    HealthCheckResult,
    JudgeRequest,
    JudgeResponse,
    Judgment,
    LLMTriadJudgment,
    ProviderBatchStatus,
    RubricListJudgment,
    RubricScore,
    SweepSummary,
)

__all__ = [
    # constants
    "ACCURACY_RUBRIC_KEY",
    "CORRECT_SCORE_THRESHOLD",
    "DEFAULT_CHALLENGER_PERCENTAGE",
    "PRODUCTION_ENVIRONMENT",
    "BatchJobStatus",
    "EvaluationStatus",
    "OutputStyle",
    "ProblemType",
    "RecordStatus",
    # entities
    "ActivationPolicy",
    "BatchJob",
    "ChallengerAssignment",
    "DeployHistoryEntry",
    "EvaluatorAssignment",
    "ExecutionRecord",
    "Insight",
    "MetricDefinition",
    "MonitoredEndpoint",
    "PromptVersion",
    # errors
    "NotFoundError",
    "ParseError",
    "PolicyNotMetError",
    "PromptLoopError",
    "ProviderError",
    "StateConflictError",
    # value objects
    "BatchReconcileResult",
    "BatchRequest",
    "ClassificationJudgment",
    "CycleReport",
    "EvaluationOutcome",
    "HealthCheckResult",
    "JudgeRequest",
    "JudgeResponse",
    "Judgment",
    "LLMTriadJudgment",
    "ProviderBatchStatus",
    "RubricListJudgment",
    "RubricScore",
    "SweepSummary",
]
