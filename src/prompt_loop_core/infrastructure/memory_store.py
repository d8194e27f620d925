"""
In-memory store

Reference adapter for every repository port. All reads and writes go through
one re-entrant lock so that concurrent evaluation workers can share it.
Deletes are soft: rows keep their data and get ``deleted_at`` set.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any, Sequence

from prompt_loop_core.domain.constants import PRODUCTION_ENVIRONMENT, EvaluationStatus
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
    utcnow,
)
from prompt_loop_core.domain.errors import NotFoundError


class InMemoryStore:
    """Thread-safe in-process implementation of LoopStore"""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.endpoints: dict[int, MonitoredEndpoint] = {}
        self.assignments: list[EvaluatorAssignment] = []
        self.metrics: dict[int, MetricDefinition] = {}
        self.records: dict[int, ExecutionRecord] = {}
        self.versions: dict[int, PromptVersion] = {}
        self.deploy_history: list[DeployHistoryEntry] = []
        self.insights: dict[int, Insight] = {}
        self.challengers: dict[int, ChallengerAssignment] = {}
        self.batch_jobs: dict[str, BatchJob] = {}
        self._sequences: dict[str, int] = {}

    def _next_id(self, table: str, existing: dict[int, Any]) -> int:
        current = max(self._sequences.get(table, 0), max(existing, default=0))
        self._sequences[table] = current + 1
        return current + 1

    @staticmethod
    def _apply(entity: Any, changes: dict[str, Any]) -> None:
        for key, value in changes.items():
            if not hasattr(entity, key):
                raise AttributeError(f"{type(entity).__name__} has no field '{key}'")
            setattr(entity, key, value)

    # ------------------------------------------------------------------
    # Endpoints, evaluator links, metrics
    # ------------------------------------------------------------------

    def get_endpoint(self, endpoint_id: int) -> MonitoredEndpoint | None:
        with self._lock:
            endpoint = self.endpoints.get(endpoint_id)
            return endpoint if endpoint is not None and endpoint.deleted_at is None else None

    def add_endpoint(self, endpoint: MonitoredEndpoint) -> MonitoredEndpoint:
        with self._lock:
            if endpoint.id is None:
                endpoint.id = self._next_id("endpoints", self.endpoints)
            self.endpoints[endpoint.id] = endpoint
            return endpoint

    def update_endpoint(self, endpoint_id: int, **changes: Any) -> MonitoredEndpoint:
        with self._lock:
            endpoint = self.get_endpoint(endpoint_id)
            if endpoint is None:
                raise NotFoundError("Endpoint", endpoint_id)
            self._apply(endpoint, changes)
            endpoint.updated_at = utcnow()
            return endpoint

    def delete_endpoint(self, endpoint_id: int) -> None:
        self.update_endpoint(endpoint_id, deleted_at=utcnow())

    def list_endpoints(self) -> list[MonitoredEndpoint]:
        with self._lock:
            return [e for e in self.endpoints.values() if e.deleted_at is None]

    def list_evaluator_assignments(self, endpoint_id: int) -> list[EvaluatorAssignment]:
        with self._lock:
            return [a for a in self.assignments if a.endpoint_id == endpoint_id]

    def add_evaluator_assignment(self, assignment: EvaluatorAssignment) -> EvaluatorAssignment:
        with self._lock:
            self.assignments.append(assignment)
            return assignment

    def list_metrics(self, endpoint_id: int) -> list[MetricDefinition]:
        with self._lock:
            return [
                m for m in self.metrics.values()
                if m.endpoint_id == endpoint_id and m.deleted_at is None
            ]

    def add_metric(self, metric: MetricDefinition) -> MetricDefinition:
        with self._lock:
            if metric.id is None:
                metric.id = self._next_id("metrics", self.metrics)
            self.metrics[metric.id] = metric
            return metric

    # ------------------------------------------------------------------
    # Execution records
    # ------------------------------------------------------------------

    def add_record(self, record: ExecutionRecord) -> ExecutionRecord:
        with self._lock:
            if record.id is None:
                record.id = self._next_id("records", self.records)
            self.records[record.id] = record
            return record

    def get_record(self, record_id: int) -> ExecutionRecord | None:
        with self._lock:
            record = self.records.get(record_id)
            return record if record is not None and record.deleted_at is None else None

    def update_record(self, record_id: int, **changes: Any) -> ExecutionRecord:
        with self._lock:
            record = self.get_record(record_id)
            if record is None:
                raise NotFoundError("ExecutionRecord", record_id)
            self._apply(record, changes)
            record.updated_at = utcnow()
            return record

    def delete_record(self, record_id: int) -> None:
        self.update_record(record_id, deleted_at=utcnow())

    def list_records(self, endpoint_id: int) -> list[ExecutionRecord]:
        with self._lock:
            records = [
                r for r in self.records.values()
                if r.endpoint_id == endpoint_id and r.deleted_at is None
            ]
            return sorted(records, key=lambda r: (r.created_at, r.id))

    def list_backlog(self, endpoint_id: int, since: datetime) -> list[ExecutionRecord]:
        with self._lock:
            return [
                r for r in self.list_records(endpoint_id)
                if not r.processed
                and r.actual is None
                and r.environment == PRODUCTION_ENVIRONMENT
                and r.evaluation_status != EvaluationStatus.PROCESSING
                and r.created_at >= since
            ]

    def claim_record(self, record_id: int, owner: str, lease_until: datetime, now: datetime) -> bool:
        with self._lock:
            record = self.get_record(record_id)
            if record is None or record.processed or not record.is_claimable(now):
                return False
            record.claimed_by = owner
            record.claim_expires_at = lease_until
            return True

    def release_claim(self, record_id: int, owner: str) -> None:
        with self._lock:
            record = self.get_record(record_id)
            if record is not None and record.claimed_by == owner:
                record.claimed_by = None
                record.claim_expires_at = None

    def list_records_by_batch(
        self, batch_id: str, evaluation_status: EvaluationStatus | None = None
    ) -> list[ExecutionRecord]:
        with self._lock:
            return [
                r for r in self.records.values()
                if r.batch_id == batch_id
                and r.deleted_at is None
                and (evaluation_status is None or r.evaluation_status == evaluation_status)
            ]

    def list_pending_batch_ids(self, since: datetime, limit: int) -> list[str]:
        with self._lock:
            newest: dict[str, datetime] = {}
            for record in self.records.values():
                if (
                    record.deleted_at is not None
                    or record.batch_id is None
                    or record.evaluation_status != EvaluationStatus.PROCESSING
                ):
                    continue
                job = self.batch_jobs.get(record.batch_id)
                created_at = job.created_at if job is not None else record.created_at
                if created_at <= since:
                    continue
                if record.batch_id not in newest or created_at > newest[record.batch_id]:
                    newest[record.batch_id] = created_at
            ordered = sorted(newest, key=lambda batch_id: newest[batch_id], reverse=True)
            return ordered[:limit]

    def list_unpaired_records(
        self, base_endpoint_id: int, challenger_endpoint_id: int
    ) -> list[ExecutionRecord]:
        with self._lock:
            paired = {
                r.origin_record_id for r in self.records.values()
                if r.endpoint_id == challenger_endpoint_id
                and r.origin_record_id is not None
                and r.deleted_at is None
            }
            return [r for r in self.list_records(base_endpoint_id) if r.id not in paired]

    # ------------------------------------------------------------------
    # Prompt versions and deploy history
    # ------------------------------------------------------------------

    def list_versions(self, endpoint_id: int) -> list[PromptVersion]:
        with self._lock:
            versions = [
                v for v in self.versions.values()
                if v.endpoint_id == endpoint_id and v.deleted_at is None
            ]
            return sorted(versions, key=lambda v: (v.created_at, v.id))

    def add_version(self, version: PromptVersion) -> PromptVersion:
        with self._lock:
            if version.id is None:
                version.id = self._next_id("versions", self.versions)
            self.versions[version.id] = version
            return version

    def deactivate_versions(self, endpoint_id: int) -> int:
        with self._lock:
            changed = 0
            for version in self.list_versions(endpoint_id):
                if version.active_version:
                    version.active_version = False
                    changed += 1
            return changed

    def activate_version(self, endpoint_id: int, version: str) -> PromptVersion | None:
        with self._lock:
            for candidate in self.list_versions(endpoint_id):
                if candidate.version == str(version):
                    candidate.active_version = True
                    return candidate
            return None

    def add_deploy_history(self, entry: DeployHistoryEntry) -> DeployHistoryEntry:
        with self._lock:
            self.deploy_history.append(entry)
            return entry

    def list_deploy_history(self, endpoint_id: int) -> list[DeployHistoryEntry]:
        with self._lock:
            return [e for e in self.deploy_history if e.endpoint_id == endpoint_id]

    # ------------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------------

    def add_insights(self, insights: Sequence[Insight]) -> list[Insight]:
        with self._lock:
            for insight in insights:
                if insight.id is None:
                    insight.id = self._next_id("insights", self.insights)
                self.insights[insight.id] = insight
            return list(insights)

    def list_insights(self, endpoint_id: int, limit: int | None = None) -> list[Insight]:
        with self._lock:
            insights = [
                i for i in self.insights.values()
                if i.endpoint_id == endpoint_id and i.deleted_at is None
            ]
            insights.sort(key=lambda i: (i.created_at, i.id), reverse=True)
            return insights if limit is None else insights[:limit]

    # ------------------------------------------------------------------
    # Challengers
    # ------------------------------------------------------------------

    def list_challengers(self, base_endpoint_id: int) -> list[ChallengerAssignment]:
        with self._lock:
            challengers = [
                c for c in self.challengers.values()
                if c.base_endpoint_id == base_endpoint_id and c.deleted_at is None
            ]
            return sorted(challengers, key=lambda c: (c.created_at, c.id))

    def get_principal_challenger(self, base_endpoint_id: int) -> ChallengerAssignment | None:
        with self._lock:
            for challenger in self.list_challengers(base_endpoint_id):
                if challenger.principal:
                    return challenger
            return None

    def get_challenger_assignment(self, challenger_endpoint_id: int) -> ChallengerAssignment | None:
        with self._lock:
            for challenger in self.challengers.values():
                if challenger.challenger_endpoint_id == challenger_endpoint_id and challenger.deleted_at is None:
                    return challenger
            return None

    def add_challenger(self, assignment: ChallengerAssignment) -> ChallengerAssignment:
        with self._lock:
            if assignment.id is None:
                assignment.id = self._next_id("challengers", self.challengers)
            self.challengers[assignment.id] = assignment
            return assignment

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------

    def add_batch_job(self, job: BatchJob) -> BatchJob:
        with self._lock:
            self.batch_jobs[job.id] = job
            return job

    def get_batch_job(self, job_id: str) -> BatchJob | None:
        with self._lock:
            return self.batch_jobs.get(job_id)

    def save_batch_job(self, job: BatchJob) -> BatchJob:
        with self._lock:
            self.batch_jobs[job.id] = job
            return job


class InMemoryMetricsCache:
    """
    Dashboard aggregate cache

    Keys are namespaced by endpoint ("endpoint:<id>:<name>") so that one
    endpoint's aggregates can be invalidated together.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[Any, datetime | None]] = {}

    @staticmethod
    def key_for(endpoint_id: int, name: str) -> str:
        return f"endpoint:{endpoint_id}:{name}"

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= utcnow():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = utcnow() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        with self._lock:
            self._entries[key] = (value, expires_at)

    def invalidate(self, endpoint_id: int) -> int:
        prefix = f"endpoint:{endpoint_id}:"
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

