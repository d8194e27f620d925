"""
Domain Constants

Centrally manages constants shared across the evaluation loop.
"""

from enum import Enum


class ProblemType(str, Enum):
    """Problem type declared by a monitored endpoint"""
    DATA_EXTRACTION = "data_extraction"
    GENERATION = "generation"
    MAPPING = "mapping"
    CLASSIFICATION = "classification"

    @classmethod
    def parse(cls, value: "str | ProblemType") -> "ProblemType":
        """Accepts the legacy 'text_generation' alias"""
        if isinstance(value, cls):
            return value
        if value == "text_generation":
            return cls.GENERATION
        return cls(value)


class OutputStyle(str, Enum):
    """Generic judge output used when no rubric pipeline exists"""
    LLM = "LLM"
    CLASSIFICATION = "classification"


class RecordStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    CRASH = "crash"


class EvaluationStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchJobStatus(str, Enum):
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed batch job transitions (terminal states have none)
BATCH_TRANSITIONS: dict[BatchJobStatus, frozenset[BatchJobStatus]] = {
    BatchJobStatus.SUBMITTED: frozenset(
        {BatchJobStatus.PROCESSING, BatchJobStatus.COMPLETED, BatchJobStatus.FAILED}
    ),
    BatchJobStatus.PROCESSING: frozenset({BatchJobStatus.COMPLETED, BatchJobStatus.FAILED}),
    BatchJobStatus.COMPLETED: frozenset(),
    BatchJobStatus.FAILED: frozenset(),
}

PRODUCTION_ENVIRONMENT = "production"

# A rubric passes when its 0-10 score reaches this value
CORRECT_SCORE_THRESHOLD = 8

# Rubric key synthesized by averaging when the provider did not return it
ACCURACY_RUBRIC_KEY = "accuracy"

# Default traffic split for a freshly provisioned challenger
DEFAULT_CHALLENGER_PERCENTAGE = 30

# Values treated as "absent" when comparing classification outputs
EMPTY_SENTINELS = frozenset({"", "none", "null", "undefined"})
