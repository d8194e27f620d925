"""
Batch Job Reconciliation

Polls provider batch jobs and folds their results back into the execution
records. Only records still marked ``processing`` are touched, so polling a
job again after it was reconciled changes nothing.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import timedelta

from prompt_loop_core.domain.constants import BatchJobStatus, EvaluationStatus, RecordStatus
from prompt_loop_core.domain.entities import BatchJob, ExecutionRecord, MonitoredEndpoint, utcnow
from prompt_loop_core.domain.errors import NotFoundError, ParseError, StateConflictError
from prompt_loop_core.domain.value_objects import BatchReconcileResult, SweepSummary
from prompt_loop_core.infrastructure.events import EventQueue, RecordEvaluated
from prompt_loop_core.infrastructure.judge_clients.base import BatchJudgeClient, JudgeClient
from prompt_loop_core.loop_config import LoopConfig
from prompt_loop_core.ports import LoopStore
from prompt_loop_core.prompt_builder import build_summary_request
from prompt_loop_core.rubrics import get_pipeline
from prompt_loop_core.scoring.correctness import classify, is_correct
from prompt_loop_core.use_cases.evaluation import (
    GENERIC_RUBRIC_KEY,
    judgment_from_rubric_outputs,
    parse_custom_id,
    parse_generic_judgment,
)

logger = logging.getLogger(__name__)


def group_results_by_record(results: dict[str, str]) -> dict[int, dict[str, str]]:
    """
    Group {custom_id: completion} into {record_id: {rubric_key: completion}}

    Unrecognized custom ids are logged and skipped.
    """
    grouped: dict[int, dict[str, str]] = defaultdict(dict)
    for custom_id, text in results.items():
        try:
            record_id, rubric_key = parse_custom_id(custom_id)
        except ParseError as e:
            logger.warning("%s; skipping result", e)
            continue
        grouped[record_id][rubric_key] = text
    return dict(grouped)


class BatchReconciler:
    """
    Reconciles provider batch jobs with the store

    Args:
        store: Repository for records, endpoints and batch jobs
        batch_judge: Client that submitted the jobs
        summary_judge: Client generating verdict summaries (default: batch_judge)
        config: Loop configuration
        events: Post-commit event queue for cache invalidation
    """

    def __init__(
        self,
        store: LoopStore,
        batch_judge: BatchJudgeClient,
        summary_judge: JudgeClient | None = None,
        config: LoopConfig | None = None,
        events: EventQueue | None = None,
    ):
        self.store = store
        self.batch_judge = batch_judge
        self.summary_judge = summary_judge or batch_judge
        self.config = config or LoopConfig()
        self.events = events if events is not None else EventQueue()

    def _job_for(self, job_id: str) -> BatchJob | None:
        return self.store.get_batch_job(job_id)

    def _transition(self, job: BatchJob | None, status: BatchJobStatus) -> None:
        if job is None:
            return
        try:
            job.transition(status)
        except StateConflictError as e:
            logger.info("Batch %s: %s; leaving job state unchanged", job.id, e)
            return
        self.store.save_batch_job(job)

    def _evaluator_for(self, job: BatchJob | None, records: list[ExecutionRecord]) -> MonitoredEndpoint:
        if job is not None:
            evaluator = self.store.get_endpoint(job.evaluator_id)
            if evaluator is None:
                raise NotFoundError("Evaluator", job.evaluator_id)
            return evaluator
        for assignment in self.store.list_evaluator_assignments(records[0].endpoint_id):
            evaluator = self.store.get_endpoint(assignment.evaluator_id)
            if evaluator is not None:
                return evaluator
        raise NotFoundError("Evaluator for endpoint", records[0].endpoint_id)

    def check_batch_status(self, job_id: str) -> BatchReconcileResult:
        """
        Poll one batch job and reconcile it when the provider has finished

        Returns:
            Provider counts while the job runs; reconciliation counts once it completed
        """
        status = self.batch_judge.retrieve_batch(job_id)
        job = self._job_for(job_id)

        if status.status == BatchJobStatus.COMPLETED:
            return self.process_batch_results(job_id)

        if status.status == BatchJobStatus.FAILED:
            self._transition(job, BatchJobStatus.FAILED)
            records = self.store.list_records_by_batch(job_id, EvaluationStatus.PROCESSING)
            for record in records:
                self.store.update_record(record.id, evaluation_status=EvaluationStatus.FAILED)
            logger.warning(
                "Batch %s ended as %s; released %d records for the next cycle",
                job_id, status.provider_status, len(records),
            )
            return BatchReconcileResult(
                job_id=job_id,
                status=status.provider_status,
                processed=len(records),
                success=0,
                failed=len(records),
            )

        self._transition(job, BatchJobStatus.PROCESSING)
        return BatchReconcileResult(
            job_id=job_id,
            status=status.provider_status,
            processed=status.completed + status.failed,
            success=status.completed,
            failed=status.failed,
        )

    def process_batch_results(self, job_id: str) -> BatchReconcileResult:
        """
        Fold a completed job's results into its processing records

        A record whose results cannot be parsed or persisted is marked failed;
        its siblings are still processed.
        """
        records = list(self.store.list_records_by_batch(job_id, EvaluationStatus.PROCESSING))
        job = self._job_for(job_id)
        if not records:
            self._transition(job, BatchJobStatus.COMPLETED)
            return BatchReconcileResult(job_id=job_id, status=BatchJobStatus.COMPLETED.value)

        evaluator = self._evaluator_for(job, records)
        pipeline = get_pipeline(evaluator.problem_type)
        grouped = group_results_by_record(self.batch_judge.fetch_batch_results(job_id))

        success = 0
        failed = 0
        for record in records:
            try:
                outputs = grouped.get(record.id)
                if not outputs:
                    raise ParseError(f"Batch {job_id} returned no result for record {record.id}")
                if pipeline is None:
                    judgment = parse_generic_judgment(evaluator, outputs[GENERIC_RUBRIC_KEY])
                else:
                    judgment = judgment_from_rubric_outputs(pipeline, outputs)

                payload = classify(judgment, self.config.evaluation.correct_score_threshold)
                summary = self.summary_judge.complete(build_summary_request(payload, pipeline)).text
                correct = is_correct(payload)
                self.store.update_record(
                    record.id,
                    actual={**payload, "summary": summary},
                    processed=True,
                    auto_evaluation_processed=True,
                    status=RecordStatus.SUCCESS if correct else RecordStatus.ERROR,
                    evaluation_status=EvaluationStatus.COMPLETED,
                )
                self.events.publish(
                    RecordEvaluated(record_id=record.id, endpoint_id=record.endpoint_id, evaluator_id=evaluator.id)
                )
                success += 1
            except Exception:
                logger.exception("Failed to process batch %s result for record %s", job_id, record.id)
                failed += 1
                try:
                    self.store.update_record(record.id, evaluation_status=EvaluationStatus.FAILED)
                except Exception:
                    logger.exception("Could not mark record %s of batch %s as failed", record.id, job_id)

        self._transition(job, BatchJobStatus.COMPLETED)
        for failure in self.events.drain():
            logger.warning("Side effect %s failed: %s", failure.handler, failure.error)
        logger.info("Batch %s reconciled: success=%d, failed=%d", job_id, success, failed)
        return BatchReconcileResult(
            job_id=job_id,
            status=BatchJobStatus.COMPLETED.value,
            processed=len(records),
            success=success,
            failed=failed,
        )

    def check_all_pending_batches(self) -> SweepSummary:
        """
        Reconcile every pending batch job created inside the sweep window

        Jobs are handled independently; a job whose poll fails is counted as
        pending and retried by the next sweep.
        """
        since = utcnow() - timedelta(days=self.config.batch.window_days)
        job_ids = self.store.list_pending_batch_ids(since, self.config.batch.max_batches_per_sweep)
        summary = SweepSummary(total_batches=len(job_ids))

        for job_id in job_ids:
            try:
                result = self.check_batch_status(job_id)
            except Exception:
                logger.exception("Failed to check batch %s", job_id)
                summary.pending_batches += 1
                continue

            summary.total_entries += result.processed
            summary.processed_entries += result.success + result.failed
            if result.status == BatchJobStatus.COMPLETED.value:
                summary.completed_batches += 1
            else:
                summary.pending_batches += 1
        return summary
