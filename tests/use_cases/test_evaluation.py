"""Tests for the evaluation executor (synchronous and batch paths)"""

import json
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import httpx
import openai
import pytest

from prompt_loop_core.domain.constants import EvaluationStatus, ProblemType, RecordStatus
from prompt_loop_core.domain.entities import (
    ActivationPolicy,
    EvaluatorAssignment,
    ExecutionRecord,
    MonitoredEndpoint,
    utcnow,
)
from prompt_loop_core.domain.errors import NotFoundError, ParseError, ProviderError
from prompt_loop_core.domain.value_objects import JudgeResponse
from prompt_loop_core.infrastructure.judge_clients.base import BatchJudgeClient, JudgeClient
from prompt_loop_core.infrastructure.judge_clients.openai_judge import OpenAIJudgeClient
from prompt_loop_core.infrastructure.memory_store import InMemoryStore
from prompt_loop_core.loop_config import LoopConfig
from prompt_loop_core.use_cases.evaluation import (
    EvaluationExecutor,
    make_custom_id,
    parse_custom_id,
)


SUMMARY_TEXT = "All rubrics pass."


class FakeJudge(JudgeClient):
    """Answers rubric requests with fixed scores and everything else with a summary"""

    model_name = "fake-judge"

    def __init__(self, scores=None, failures=0):
        self.scores = scores or {}
        self.failures = failures
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, request):
        with self._lock:
            self.calls.append(request.schema_name)
            if self.failures > 0:
                self.failures -= 1
                raise ProviderError("rate limited", provider="fake")
        if request.schema_name == "evaluation":
            if request.response_schema is not None:
                text = json.dumps({
                    "metrics": {"relevance": 9, "coherence": 9, "correctness": 9},
                    "confidenceLevel": "High",
                    "feedback": "fine",
                })
            else:
                text = SUMMARY_TEXT
        else:
            score = self.scores.get(request.schema_name, 9)
            text = json.dumps({"score": score, "analysis": f"{request.schema_name} ok", "errors": []})
        return JudgeResponse(text=text, latency_ms=5, model_name=self.model_name)


class FakeBatchJudge(FakeJudge, BatchJudgeClient):
    def __init__(self, submit_error=None):
        super().__init__()
        self.submit_error = submit_error
        self.submitted = []

    def submit_batch(self, requests, completion_window="24h"):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(requests)
        return f"batch-{len(self.submitted)}"

    def retrieve_batch(self, job_id):
        raise NotImplementedError

    def fetch_batch_results(self, job_id):
        raise NotImplementedError


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_endpoint(MonitoredEndpoint(name="Invoices", parameters={"prompt": "Extract totals"}))
    store.add_endpoint(MonitoredEndpoint(name="Extraction judge", problem_type=ProblemType.DATA_EXTRACTION))
    store.add_evaluator_assignment(
        EvaluatorAssignment(
            endpoint_id=1,
            evaluator_id=2,
            policy=ActivationPolicy(backlog_threshold=0, sampling_percentage=100, per_cycle_limit=5),
        )
    )
    for i in range(3):
        store.add_record(ExecutionRecord(endpoint_id=1, input={"input": f"invoice {i}"}, output=f"total {i}"))
    return store


def _claim(executor, record):
    """Claim a record the way a cycle does before evaluating it"""
    now = utcnow()
    assert executor.store.claim_record(record.id, executor.sampler.owner, now + timedelta(minutes=5), now)
    return record


class TestCustomIds:
    def test_round_trip(self):
        assert parse_custom_id(make_custom_id(12, "format_adherence")) == (12, "format_adherence")

    @pytest.mark.parametrize("custom_id", ["12-correctness", "r-correctness", "r12", "rx-generic"])
    def test_invalid(self, custom_id):
        with pytest.raises(ParseError):
            parse_custom_id(custom_id)


class TestSingleEvaluate:
    def test_success_persists_verdict(self, store):
        executor = EvaluationExecutor(store, FakeJudge())
        record = store.get_record(1)

        outcome = executor.single_evaluate(record, store.get_endpoint(2))

        assert outcome.processed and outcome.correct
        assert outcome.attempts == 1
        saved = store.get_record(1)
        assert saved.processed and saved.auto_evaluation_processed
        assert saved.status == RecordStatus.SUCCESS
        assert [e["evaluator"] for e in saved.actual["evaluations"]] == [
            "correctness", "completeness", "format_adherence", "accuracy",
        ]
        assert saved.actual["accuracy"] == 9

    def test_summary_is_attached_after_drain(self, store):
        executor = EvaluationExecutor(store, FakeJudge())
        executor.single_evaluate(store.get_record(1), store.get_endpoint(2))
        assert "summary" not in store.get_record(1).actual

        assert executor.events.drain() == []
        assert store.get_record(1).actual["summary"] == SUMMARY_TEXT

    def test_low_score_is_an_error(self, store):
        executor = EvaluationExecutor(store, FakeJudge(scores={"completeness": 5}))
        outcome = executor.single_evaluate(store.get_record(1), store.get_endpoint(2))

        assert outcome.processed and outcome.correct is False
        assert store.get_record(1).status == RecordStatus.ERROR
        assert store.get_record(1).actual["correct"] is False

    def test_exhausted_attempts_leave_record_unprocessed(self, store):
        executor = EvaluationExecutor(store, FakeJudge(failures=100))
        record = _claim(executor, store.get_record(1))

        outcome = executor.single_evaluate(record, store.get_endpoint(2))

        assert not outcome.processed
        assert outcome.attempts == 2
        assert "rate limited" in outcome.error
        saved = store.get_record(1)
        assert not saved.processed
        assert saved.actual is None
        assert saved.claimed_by is None
        assert executor.events.pending == 0

    def test_retry_reruns_every_rubric(self, store):
        judge = FakeJudge(failures=1)
        executor = EvaluationExecutor(store, judge)

        outcome = executor.single_evaluate(store.get_record(1), store.get_endpoint(2))

        assert outcome.processed
        assert outcome.attempts == 2
        assert judge.calls == ["correctness", "correctness", "completeness", "format_adherence"]

    @patch("prompt_loop_core.infrastructure.judge_clients.base.time.sleep")
    def test_persistent_timeout_costs_one_call_per_attempt(self, mock_sleep, store):
        judge = OpenAIJudgeClient("gpt-4o", api_key="test-key", max_retries=3)
        judge.client = MagicMock()
        judge.client.chat.completions.create.side_effect = openai.APITimeoutError(
            request=httpx.Request("POST", "https://api.example.test/v1/chat/completions"),
        )
        executor = EvaluationExecutor(store, judge)
        record = _claim(executor, store.get_record(1))

        outcome = executor.single_evaluate(record, store.get_endpoint(2))

        assert not outcome.processed
        assert outcome.attempts == 2
        assert judge.client.chat.completions.create.call_count == 2
        mock_sleep.assert_not_called()

    def test_generic_evaluator(self, store):
        store.add_endpoint(MonitoredEndpoint(name="Writer judge", problem_type="text_generation"))
        executor = EvaluationExecutor(store, FakeJudge())

        outcome = executor.single_evaluate(store.get_record(1), store.get_endpoint(3))

        assert outcome.correct
        assert store.get_record(1).actual["metrics"]["correctness"] == 9


class TestEvaluationCycle:
    def test_cycle_evaluates_every_sampled_record(self, store):
        executor = EvaluationExecutor(store, FakeJudge())

        reports = executor.run_evaluation_cycle(1, batch=False)

        assert len(reports) == 1
        assert reports[0].sampled == 3
        assert reports[0].processed == 3
        assert reports[0].failed == 0
        for record in store.list_records(1):
            assert record.processed
            assert record.actual["summary"] == SUMMARY_TEXT

    def test_failed_records_are_counted(self, store):
        config = LoopConfig()
        config.evaluation.max_concurrency = 1
        executor = EvaluationExecutor(store, FakeJudge(failures=100), config=config)

        report = executor.run_evaluation_cycle(1, batch=False)[0]

        assert report.processed == 0
        assert report.failed == 3
        assert len(store.list_backlog(1, store.get_record(1).created_at)) == 3

    def test_empty_backlog(self, store):
        for record in store.list_records(1):
            store.update_record(record.id, processed=True, actual={"correct": True})
        report = EvaluationExecutor(store, FakeJudge()).run_evaluation_cycle(1, batch=False)[0]
        assert report.sampled == 0

    def test_unknown_endpoint(self, store):
        with pytest.raises(NotFoundError):
            EvaluationExecutor(store, FakeJudge()).run_evaluation_cycle(99)

    def test_unknown_evaluator(self, store):
        store.add_evaluator_assignment(EvaluatorAssignment(endpoint_id=1, evaluator_id=42))
        with pytest.raises(NotFoundError):
            EvaluationExecutor(store, FakeJudge()).run_evaluation_cycle(1, batch=False)


class TestBatchEvaluate:
    def test_submission_marks_records_processing(self, store):
        batch_judge = FakeBatchJudge()
        executor = EvaluationExecutor(store, FakeJudge(), batch_judge=batch_judge)

        reports = executor.run_evaluation_cycle(1, batch=True)

        assert reports[0].batch_id == "batch-1"
        job = store.get_batch_job("batch-1")
        assert job.request_count == 9
        assert sorted(job.record_ids) == [1, 2, 3]
        custom_ids = {request.custom_id for request in batch_judge.submitted[0]}
        assert "r1-correctness" in custom_ids and "r3-format_adherence" in custom_ids
        for record in store.list_records(1):
            assert record.batch_id == "batch-1"
            assert record.evaluation_status == EvaluationStatus.PROCESSING
            assert record.claimed_by is None
            assert not record.processed

    def test_generic_evaluator_sends_one_request_per_record(self, store):
        store.add_endpoint(MonitoredEndpoint(name="Writer judge", problem_type=ProblemType.GENERATION))
        batch_judge = FakeBatchJudge()
        executor = EvaluationExecutor(store, FakeJudge(), batch_judge=batch_judge)

        executor.batch_evaluate(store.list_records(1), store.get_endpoint(3))

        assert [r.custom_id for r in batch_judge.submitted[0]] == ["r1-generic", "r2-generic", "r3-generic"]

    def test_submission_failure_changes_nothing(self, store):
        executor = EvaluationExecutor(
            store, FakeJudge(), batch_judge=FakeBatchJudge(submit_error=ProviderError("down"))
        )
        records = [_claim(executor, record) for record in store.list_records(1)]

        with pytest.raises(ProviderError):
            executor.batch_evaluate(records, store.get_endpoint(2))

        assert store.batch_jobs == {}
        for record in store.list_records(1):
            assert record.batch_id is None
            assert record.evaluation_status is None
            assert record.claimed_by is None

    def test_records_must_share_an_endpoint(self, store):
        store.add_record(ExecutionRecord(endpoint_id=2, input="x", output="y"))
        executor = EvaluationExecutor(store, FakeJudge(), batch_judge=FakeBatchJudge())
        with pytest.raises(ValueError):
            executor.batch_evaluate([store.get_record(1), store.get_record(4)], store.get_endpoint(2))

    def test_requires_batch_client(self, store):
        executor = EvaluationExecutor(store, FakeJudge())
        with pytest.raises(ValueError):
            executor.batch_evaluate(store.list_records(1), store.get_endpoint(2))

    def test_nothing_to_submit(self, store):
        executor = EvaluationExecutor(store, FakeJudge(), batch_judge=FakeBatchJudge())
        assert executor.batch_evaluate([], store.get_endpoint(2)) is None
