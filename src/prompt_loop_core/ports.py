"""Port definitions for the persistence and cache collaborators of the loop.

The relational store and the dashboard cache live outside this package;
adapters implement these protocols for any backend.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence

from prompt_loop_core.domain.constants import EvaluationStatus
from prompt_loop_core.domain.entities import (
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


class EndpointRepository(Protocol):
    def get_endpoint(self, endpoint_id: int) -> MonitoredEndpoint | None:
        """Return a non-deleted endpoint or None."""

    def add_endpoint(self, endpoint: MonitoredEndpoint) -> MonitoredEndpoint:
        """Persist a new endpoint and assign its id."""

    def update_endpoint(self, endpoint_id: int, **changes: Any) -> MonitoredEndpoint:
        """Apply changes and stamp updated_at."""

    def list_evaluator_assignments(self, endpoint_id: int) -> Sequence[EvaluatorAssignment]:
        """Return the evaluators linked to an endpoint."""

    def add_evaluator_assignment(self, assignment: EvaluatorAssignment) -> EvaluatorAssignment:
        """Link an evaluator to an endpoint."""

    def list_metrics(self, endpoint_id: int) -> Sequence[MetricDefinition]:
        """Return the metric definitions of an endpoint."""

    def add_metric(self, metric: MetricDefinition) -> MetricDefinition:
        """Persist a metric definition and assign its id."""


class ExecutionRecordRepository(Protocol):
    def add_record(self, record: ExecutionRecord) -> ExecutionRecord:
        """Persist a new record and assign its id."""

    def get_record(self, record_id: int) -> ExecutionRecord | None:
        """Return a non-deleted record or None."""

    def update_record(self, record_id: int, **changes: Any) -> ExecutionRecord:
        """Apply changes and stamp updated_at."""

    def list_backlog(self, endpoint_id: int, since: datetime) -> Sequence[ExecutionRecord]:
        """Unprocessed production records without a verdict created at or after since."""

    def claim_record(self, record_id: int, owner: str, lease_until: datetime, now: datetime) -> bool:
        """Conditionally claim an unprocessed, unclaimed (or lease-expired) record."""

    def release_claim(self, record_id: int, owner: str) -> None:
        """Drop a claim held by owner."""

    def list_records_by_batch(
        self, batch_id: str, evaluation_status: EvaluationStatus | None = None
    ) -> Sequence[ExecutionRecord]:
        """Return the records linked to a batch job."""

    def list_pending_batch_ids(self, since: datetime, limit: int) -> Sequence[str]:
        """Distinct ids of batch jobs with records still processing, newest first."""

    def list_unpaired_records(
        self, base_endpoint_id: int, challenger_endpoint_id: int
    ) -> Sequence[ExecutionRecord]:
        """Base records without a challenger record pointing back at them."""

    def list_records(self, endpoint_id: int) -> Sequence[ExecutionRecord]:
        """All non-deleted records of an endpoint, oldest first."""


class PromptVersionRepository(Protocol):
    def list_versions(self, endpoint_id: int) -> Sequence[PromptVersion]:
        """Versions of an endpoint, oldest first."""

    def add_version(self, version: PromptVersion) -> PromptVersion:
        """Persist a new version."""

    def deactivate_versions(self, endpoint_id: int) -> int:
        """Clear active_version on every version of an endpoint; return the count changed."""

    def activate_version(self, endpoint_id: int, version: str) -> PromptVersion | None:
        """Set active_version on one version; None when it does not exist."""

    def add_deploy_history(self, entry: DeployHistoryEntry) -> DeployHistoryEntry:
        """Append a deploy history entry."""

    def list_deploy_history(self, endpoint_id: int) -> Sequence[DeployHistoryEntry]:
        """Deploy history of an endpoint, oldest first."""


class InsightRepository(Protocol):
    def add_insights(self, insights: Sequence[Insight]) -> Sequence[Insight]:
        """Persist insights and assign their ids."""

    def list_insights(self, endpoint_id: int, limit: int | None = None) -> Sequence[Insight]:
        """Insights of an endpoint, newest first."""


class ChallengerRepository(Protocol):
    def list_challengers(self, base_endpoint_id: int) -> Sequence[ChallengerAssignment]:
        """Challenger assignments of a base endpoint, oldest first."""

    def get_principal_challenger(self, base_endpoint_id: int) -> ChallengerAssignment | None:
        """The principal assignment of a base endpoint, if any."""

    def get_challenger_assignment(self, challenger_endpoint_id: int) -> ChallengerAssignment | None:
        """The assignment that makes an endpoint a challenger, if any."""

    def add_challenger(self, assignment: ChallengerAssignment) -> ChallengerAssignment:
        """Persist a challenger assignment."""


class BatchJobRepository(Protocol):
    def add_batch_job(self, job: BatchJob) -> BatchJob:
        """Persist a submitted batch job."""

    def get_batch_job(self, job_id: str) -> BatchJob | None:
        """Return a batch job or None."""

    def save_batch_job(self, job: BatchJob) -> BatchJob:
        """Persist state changes of a batch job."""


class LoopStore(
    EndpointRepository,
    ExecutionRecordRepository,
    PromptVersionRepository,
    InsightRepository,
    ChallengerRepository,
    BatchJobRepository,
    Protocol,
):
    """Every repository the loop engines need, behind one object."""


class MetricsCache(Protocol):
    """Key-value cache memoizing derived dashboard aggregates."""

    def get(self, key: str) -> Any | None:
        """Return a cached value or None."""

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store a value."""

    def invalidate(self, endpoint_id: int) -> int:
        """Drop every key derived from an endpoint; return the count removed."""
