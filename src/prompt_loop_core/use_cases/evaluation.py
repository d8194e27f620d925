"""
Evaluation Execution

Judges sampled execution records, either synchronously (one judge call per
rubric, fanned out across a bounded thread pool) or by submitting every
(record, rubric) request of a cycle as one provider batch job.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed

from prompt_loop_core.domain.constants import EvaluationStatus, RecordStatus
from prompt_loop_core.domain.entities import BatchJob, ExecutionRecord, MonitoredEndpoint
from prompt_loop_core.domain.errors import NotFoundError, ParseError
from prompt_loop_core.domain.value_objects import (
    BatchRequest,
    CycleReport,
    EvaluationOutcome,
    JudgeRequest,
    Judgment,
    LLMTriadJudgment,
    RubricListJudgment,
)
from prompt_loop_core.infrastructure.events import EventQueue, RecordEvaluated
from prompt_loop_core.infrastructure.judge_clients.base import BatchJudgeClient, JudgeClient
from prompt_loop_core.loop_config import LoopConfig
from prompt_loop_core.ports import LoopStore
from prompt_loop_core.prompt_builder import (
    build_generic_request,
    build_rubric_request,
    build_summary_request,
)
from prompt_loop_core.rubrics import RubricPipeline, complete_rubric_scores, get_pipeline
from prompt_loop_core.scoring.correctness import classify, is_correct, judgment_kind_for
from prompt_loop_core.scoring.judgment_parser import (
    parse_classification,
    parse_llm_triad,
    parse_rubric_score,
)
from prompt_loop_core.use_cases.sampler import ActivationController

logger = logging.getLogger(__name__)

# Rubric key used for the single request of evaluators without a pipeline
GENERIC_RUBRIC_KEY = "generic"


def make_custom_id(record_id: int, rubric_key: str) -> str:
    """Batch request id for one (record, rubric) pair"""
    return f"r{record_id}-{rubric_key}"


def parse_custom_id(custom_id: str) -> tuple[int, str]:
    """
    Split a batch request id back into (record id, rubric key)

    Raises:
        ParseError: When the id was not produced by make_custom_id
    """
    head, sep, rubric_key = custom_id.partition("-")
    if not sep or not head.startswith("r") or not head[1:].isdigit() or not rubric_key:
        raise ParseError(f"Unrecognized batch custom id: {custom_id}")
    return int(head[1:]), rubric_key


def parse_generic_judgment(evaluator: MonitoredEndpoint, raw: str) -> Judgment:
    """Parse the answer to a generic prompt according to the evaluator's output style"""
    kind = judgment_kind_for(evaluator.problem_type, False, evaluator.output_style)
    if kind is LLMTriadJudgment:
        return parse_llm_triad(raw)
    return parse_classification(raw)


def judgment_from_rubric_outputs(
    pipeline: RubricPipeline,
    outputs: dict[str, str],
) -> Judgment:
    """
    Build the judgment of one record from its raw rubric answers

    Rubrics are read in declared order; a malformed answer fails that rubric
    only. A missing accuracy rubric is synthesized when the pipeline expects it.

    Raises:
        ParseError: When no rubric produced a parsable answer
    """
    scores = []
    for rubric in pipeline.rubrics:
        raw = outputs.get(rubric.key)
        if raw is None:
            continue
        try:
            if rubric.classification:
                return parse_classification(raw)
            scores.append(parse_rubric_score(raw, rubric.key))
        except ParseError as e:
            logger.warning("Skipping rubric '%s': %s", rubric.key, e)

    if not scores:
        raise ParseError("No rubric produced a parsable result")
    return RubricListJudgment(evaluations=complete_rubric_scores(pipeline, scores))


class EvaluationExecutor:
    """
    Runs evaluation cycles for monitored endpoints

    Args:
        store: Repository for endpoints, records and batch jobs
        judge: Synchronous judge client
        config: Loop configuration (default: LoopConfig())
        events: Post-commit event queue; a private one is created if omitted
        batch_judge: Judge client used for batch submission
        sampler: Activation controller (default: one built on the store)
    """

    def __init__(
        self,
        store: LoopStore,
        judge: JudgeClient,
        config: LoopConfig | None = None,
        events: EventQueue | None = None,
        batch_judge: BatchJudgeClient | None = None,
        sampler: ActivationController | None = None,
    ):
        self.store = store
        self.judge = judge
        self.config = config or LoopConfig()
        self.events = events if events is not None else EventQueue()
        self.batch_judge = batch_judge
        self.sampler = sampler or ActivationController(store, self.config.evaluation)
        self.events.subscribe(RecordEvaluated, self._attach_summary)

    # ------------------------------------------------------------------
    # Synchronous path
    # ------------------------------------------------------------------

    def _complete(self, request: JudgeRequest) -> str:
        return self.judge.complete(request).text

    def judge_record(self, record: ExecutionRecord, evaluator: MonitoredEndpoint) -> Judgment:
        """
        Run every rubric of the evaluator's pipeline once for one record

        Raises:
            ProviderError: When a judge call fails
            ParseError: When no rubric produced a parsable answer
        """
        pipeline = get_pipeline(evaluator.problem_type)
        if pipeline is None:
            raw = self._complete(build_generic_request(record, evaluator.output_style))
            return parse_generic_judgment(evaluator, raw)

        outputs = {}
        for rubric in pipeline.rubrics:
            outputs[rubric.key] = self._complete(build_rubric_request(rubric, record))
        return judgment_from_rubric_outputs(pipeline, outputs)

    def single_evaluate(self, record: ExecutionRecord, evaluator: MonitoredEndpoint) -> EvaluationOutcome:
        """
        Evaluate one record, retrying the whole rubric set on failure

        On success the verdict is persisted and a RecordEvaluated event is
        published. After the last failed attempt the record is left
        unprocessed and its claim released so a later cycle retries it.
        """
        max_attempts = self.config.evaluation.max_attempts
        last_error: Exception | None = None
        judgment: Judgment | None = None
        attempts = 0

        while attempts < max_attempts:
            attempts += 1
            try:
                judgment = self.judge_record(record, evaluator)
                break
            except Exception as e:
                last_error = e
                logger.warning(
                    "Evaluation of record %s failed (attempt %d/%d): %s",
                    record.id, attempts, max_attempts, e,
                )

        if judgment is None:
            logger.error(
                "Record %s failed evaluation after %d attempts; leaving it for the next cycle",
                record.id, attempts,
            )
            self.sampler.release(record)
            return EvaluationOutcome(
                record_id=record.id,
                processed=False,
                attempts=attempts,
                error=str(last_error),
            )

        payload = classify(judgment, self.config.evaluation.correct_score_threshold)
        correct = is_correct(payload)
        self.store.update_record(
            record.id,
            actual=payload,
            processed=True,
            auto_evaluation_processed=True,
            status=RecordStatus.SUCCESS if correct else RecordStatus.ERROR,
            claimed_by=None,
            claim_expires_at=None,
        )
        self.events.publish(
            RecordEvaluated(
                record_id=record.id,
                endpoint_id=record.endpoint_id,
                evaluator_id=evaluator.id,
                needs_summary=True,
            )
        )
        return EvaluationOutcome(record_id=record.id, processed=True, correct=correct, attempts=attempts)

    def _attach_summary(self, event: RecordEvaluated) -> None:
        """Post-commit handler adding the verdict summary to a synchronously evaluated record"""
        if not event.needs_summary:
            return
        record = self.store.get_record(event.record_id)
        if record is None or not record.actual:
            return
        evaluator = self.store.get_endpoint(event.evaluator_id) if event.evaluator_id is not None else None
        pipeline = get_pipeline(evaluator.problem_type) if evaluator is not None else None
        summary = self._complete(build_summary_request(record.actual, pipeline))
        self.store.update_record(record.id, actual={**record.actual, "summary": summary})

    def evaluate_samples(self, records: list[ExecutionRecord], evaluator: MonitoredEndpoint) -> CycleReport:
        """
        Evaluate a cycle's sample synchronously on a bounded thread pool

        Every record is evaluated before the report is returned; post-commit
        side effects are then drained and their failures counted.
        """
        endpoint_id = records[0].endpoint_id if records else 0
        report = CycleReport(endpoint_id=endpoint_id, evaluator_id=evaluator.id, sampled=len(records))
        if not records:
            return report

        workers = max(1, min(self.config.evaluation.max_concurrency, len(records)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.single_evaluate, record, evaluator): record
                for record in records
            }
            for future in as_completed(futures):
                record = futures[future]
                try:
                    outcome = future.result()
                except Exception:
                    logger.exception("Unexpected failure while evaluating record %s", record.id)
                    self.sampler.release(record)
                    report.failed += 1
                    continue
                if outcome.processed:
                    report.processed += 1
                else:
                    report.failed += 1

        report.side_effect_failures = len(self.events.drain())
        logger.info(
            "Evaluator %s: processed=%d, failed=%d, side_effect_failures=%d",
            evaluator.id, report.processed, report.failed, report.side_effect_failures,
        )
        return report

    # ------------------------------------------------------------------
    # Batch path
    # ------------------------------------------------------------------

    def build_batch_requests(
        self, records: list[ExecutionRecord], evaluator: MonitoredEndpoint
    ) -> list[BatchRequest]:
        """One request per (record, rubric); a single generic request per record without a pipeline"""
        pipeline = get_pipeline(evaluator.problem_type)
        requests = []
        for record in records:
            if pipeline is None:
                requests.append(
                    BatchRequest(
                        custom_id=make_custom_id(record.id, GENERIC_RUBRIC_KEY),
                        request=build_generic_request(record, evaluator.output_style),
                    )
                )
                continue
            for rubric in pipeline.rubrics:
                requests.append(
                    BatchRequest(
                        custom_id=make_custom_id(record.id, rubric.key),
                        request=build_rubric_request(rubric, record),
                    )
                )
        return requests

    def batch_evaluate(self, records: list[ExecutionRecord], evaluator: MonitoredEndpoint) -> str | None:
        """
        Submit every request of a cycle as one provider batch job

        Submission is all-or-nothing: if the provider call fails no record
        changes state and the claims are released.

        Returns:
            The provider job id, or None when there is nothing to submit

        Raises:
            ValueError: When no batch client is configured or records span several endpoints
            ProviderError: When the submission fails
        """
        if not records:
            return None
        if self.batch_judge is None:
            raise ValueError("Batch evaluation requires a batch-capable judge client")
        endpoint_ids = {record.endpoint_id for record in records}
        if len(endpoint_ids) > 1:
            raise ValueError(f"A batch must target one endpoint, got {sorted(endpoint_ids)}")

        requests = self.build_batch_requests(records, evaluator)
        try:
            job_id = self.batch_judge.submit_batch(
                requests, completion_window=self.config.batch.completion_window
            )
        except Exception:
            for record in records:
                self.sampler.release(record)
            raise

        self.store.add_batch_job(
            BatchJob(
                id=job_id,
                evaluator_id=evaluator.id,
                problem_type=evaluator.problem_type,
                record_ids=[record.id for record in records],
                request_count=len(requests),
            )
        )
        for record in records:
            self.store.update_record(
                record.id,
                batch_id=job_id,
                evaluation_status=EvaluationStatus.PROCESSING,
                claimed_by=None,
                claim_expires_at=None,
            )
        logger.info("Submitted batch %s: %d records, %d requests", job_id, len(records), len(requests))
        return job_id

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_evaluation_cycle(self, endpoint_id: int, batch: bool | None = None) -> list[CycleReport]:
        """
        Sample and evaluate the backlog of an endpoint, once per linked evaluator

        Args:
            endpoint_id: Monitored endpoint
            batch: Use the batch path (default: BatchConfig.enabled)

        Raises:
            NotFoundError: When the endpoint or one of its evaluators does not exist
        """
        if self.store.get_endpoint(endpoint_id) is None:
            raise NotFoundError("Endpoint", endpoint_id)
        use_batch = self.config.batch.enabled if batch is None else batch

        reports = []
        for assignment in self.store.list_evaluator_assignments(endpoint_id):
            evaluator = self.store.get_endpoint(assignment.evaluator_id)
            if evaluator is None:
                raise NotFoundError("Evaluator", assignment.evaluator_id)

            records = self.sampler.sample(endpoint_id, assignment.policy)
            if not records:
                reports.append(CycleReport(endpoint_id=endpoint_id, evaluator_id=evaluator.id))
                continue

            if use_batch:
                job_id = self.batch_evaluate(records, evaluator)
                reports.append(
                    CycleReport(
                        endpoint_id=endpoint_id,
                        evaluator_id=evaluator.id,
                        sampled=len(records),
                        batch_id=job_id,
                    )
                )
            else:
                reports.append(self.evaluate_samples(records, evaluator))
        return reports
