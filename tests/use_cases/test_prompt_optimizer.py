"""Tests for prompt optimization and version release"""

from datetime import timedelta
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from prompt_loop_core.domain.constants import RecordStatus
from prompt_loop_core.domain.entities import (
    ActivationPolicy,
    ChallengerAssignment,
    EvaluatorAssignment,
    ExecutionRecord,
    Insight,
    MetricDefinition,
    MonitoredEndpoint,
    PromptVersion,
    utcnow,
)
from prompt_loop_core.domain.errors import NotFoundError, ParseError, ProviderError, StateConflictError
from prompt_loop_core.domain.value_objects import JudgeResponse
from prompt_loop_core.infrastructure.events import build_event_queue
from prompt_loop_core.infrastructure.judge_clients.openai_judge import OpenAIJudgeClient
from prompt_loop_core.infrastructure.memory_store import InMemoryMetricsCache, InMemoryStore
from prompt_loop_core.use_cases.prompt_optimizer import (
    PromptOptimizer,
    active_prompt,
    next_version_number,
)


def _judge(text="```\nExtract totals with currency.\n```"):
    judge = MagicMock()
    judge.complete.return_value = JudgeResponse(text=text, latency_ms=10, model_name="optimizer")
    return judge


@pytest.fixture
def store():
    """Base endpoint 1 (active version 1) judged by evaluator 2, with two insights"""
    store = InMemoryStore()
    store.add_endpoint(MonitoredEndpoint(name="Invoices", parameters={"prompt": "Extract totals", "temperature": 0}))
    store.add_endpoint(MonitoredEndpoint(name="Judge", problem_type="data_extraction"))
    store.add_evaluator_assignment(EvaluatorAssignment(
        endpoint_id=1, evaluator_id=2, policy=ActivationPolicy(backlog_threshold=4),
    ))
    store.add_metric(MetricDefinition(endpoint_id=1, name="accuracy", threshold=0.9))
    store.add_version(PromptVersion(endpoint_id=1, version="1", prompt="Extract totals (v1)", active_version=True))
    store.add_insights([
        Insight(endpoint_id=1, problem="No currency", solution="Add currency", description="", version_tag="1-1"),
        Insight(endpoint_id=1, problem="Dates", solution="ISO dates", description="", version_tag="1-1"),
    ])
    return store


class TestHelpers:
    def test_next_version_number(self):
        assert next_version_number([]) == "1"
        assert next_version_number([PromptVersion(endpoint_id=1, version="4", prompt="")]) == "5"
        versions = [PromptVersion(endpoint_id=1, version=v, prompt="") for v in ("1", "beta")]
        assert next_version_number(versions) == "3"

    def test_active_prompt_prefers_active_version(self, store):
        assert active_prompt(store, store.get_endpoint(1)) == "Extract totals (v1)"
        store.deactivate_versions(1)
        assert active_prompt(store, store.get_endpoint(1)) == "Extract totals"


class TestOptimizeEndpoint:
    def test_creates_challenger_clone(self, store):
        judge = _judge()
        optimizer = PromptOptimizer(store, judge)

        version = optimizer.optimize_endpoint(1)

        assignment = store.get_principal_challenger(1)
        assert assignment.percentage == 30
        clone = store.get_endpoint(assignment.challenger_endpoint_id)
        assert clone.is_optimized
        assert clone.slug.startswith("invoices-optimized-")
        assert clone.parameters == {"prompt": "Extract totals with currency.", "temperature": 0}
        assert [m.name for m in store.list_metrics(clone.id)] == ["accuracy"]
        assert store.list_evaluator_assignments(clone.id)[0].policy.backlog_threshold == 4
        assert version.endpoint_id == clone.id
        assert version.version == "1"
        assert not version.active_version
        assert store.get_endpoint(1).prompt == "Extract totals"

    def test_clone_metrics_keep_thresholds_with_new_ids(self, store):
        store.add_metric(MetricDefinition(endpoint_id=1, name="latency", threshold=2.5))
        base_ids = {m.id for m in store.list_metrics(1)}

        version = PromptOptimizer(store, _judge()).optimize_endpoint(1)

        cloned = store.list_metrics(version.endpoint_id)
        assert {m.name: m.threshold for m in cloned} == {"accuracy": 0.9, "latency": 2.5}
        assert all(m.endpoint_id == version.endpoint_id for m in cloned)
        assert not {m.id for m in cloned} & base_ids
        assert {m.id for m in store.list_metrics(1)} == base_ids

    def test_enhancement_uses_active_prompt_and_insights(self, store):
        judge = _judge()
        PromptOptimizer(store, judge).optimize_endpoint(1)

        content = judge.complete.call_args[0][0].messages[1]["content"]
        assert "Original Prompt:\nExtract totals (v1)" in content
        assert "Suggested Solution: Add currency" in content

    def test_reuses_principal_challenger(self, store):
        store.add_endpoint(MonitoredEndpoint(name="Invoices challenger", is_optimized=True))
        store.add_challenger(ChallengerAssignment(base_endpoint_id=1, challenger_endpoint_id=3, principal=True))
        store.add_version(PromptVersion(endpoint_id=3, version="1", prompt="old challenger"))

        version = PromptOptimizer(store, _judge()).optimize_endpoint(1)

        assert version.endpoint_id == 3
        assert version.version == "2"
        assert len(store.list_endpoints()) == 3

    def test_insight_limit(self, store):
        judge = _judge()
        optimizer = PromptOptimizer(store, judge)
        optimizer.config.insight_limit = 1
        optimizer.optimize_endpoint(1)

        content = judge.complete.call_args[0][0].messages[1]["content"]
        assert "2. Problem Identified" not in content

    def test_without_insights(self, store):
        store.add_endpoint(MonitoredEndpoint(name="Fresh"))
        with pytest.raises(StateConflictError):
            PromptOptimizer(store, _judge()).optimize_endpoint(3)

    def test_unknown_endpoint(self, store):
        with pytest.raises(NotFoundError):
            PromptOptimizer(store, _judge()).optimize_endpoint(99)

    def test_empty_rewrite(self, store):
        with pytest.raises(ParseError):
            PromptOptimizer(store, _judge("```json\n```")).optimize_endpoint(1)
        assert store.get_principal_challenger(1) is None

    def test_provider_timeout_is_not_retried(self, store):
        judge = OpenAIJudgeClient("gpt-4o", api_key="test-key", max_retries=3)
        judge.client = MagicMock()
        judge.client.chat.completions.create.side_effect = openai.APITimeoutError(
            request=httpx.Request("POST", "https://api.example.test/v1/chat/completions"),
        )

        with pytest.raises(ProviderError):
            PromptOptimizer(store, judge).optimize_endpoint(1)

        assert judge.client.chat.completions.create.call_count == 1
        assert store.get_principal_challenger(1) is None


class TestOptimizeFromError:
    def test_reviews_then_optimizes(self, store):
        record = store.add_record(ExecutionRecord(
            endpoint_id=1, input="q", output="a", processed=True,
            actual={"correct": False}, status=RecordStatus.ERROR,
        ))
        insight_generator = MagicMock()

        version = PromptOptimizer(store, _judge(), insight_generator=insight_generator).optimize_from_error(record.id)

        insight_generator.review_record_by_id.assert_called_once_with(record.id)
        assert version.endpoint_id == store.get_principal_challenger(1).challenger_endpoint_id

    def test_correct_record_is_rejected(self, store):
        record = store.add_record(ExecutionRecord(
            endpoint_id=1, input="q", output="a", processed=True, actual={"correct": True},
        ))
        insight_generator = MagicMock()
        optimizer = PromptOptimizer(store, _judge(), insight_generator=insight_generator)

        with pytest.raises(StateConflictError):
            optimizer.optimize_from_error(record.id)
        insight_generator.review_record_by_id.assert_not_called()

    def test_missing_record(self, store):
        with pytest.raises(NotFoundError):
            PromptOptimizer(store, _judge(), insight_generator=MagicMock()).optimize_from_error(42)

    def test_requires_insight_generator(self, store):
        with pytest.raises(ValueError):
            PromptOptimizer(store, _judge()).optimize_from_error(1)


class TestRelease:
    @pytest.fixture
    def optimized(self, store):
        """Store after one optimization, so endpoint 3 is the principal challenger"""
        PromptOptimizer(store, _judge()).optimize_endpoint(1)
        return store

    def test_exactly_one_active_version(self, optimized):
        optimizer = PromptOptimizer(optimized, judge=None)

        released = optimizer.release_prompt_version(3, "1", original_endpoint_id=1)

        assert released.active_version
        active = [v for endpoint_id in (1, 3) for v in optimized.list_versions(endpoint_id) if v.active_version]
        assert active == [released]
        history = optimized.list_deploy_history(1)
        assert [(e.endpoint_id, e.version) for e in history] == [(1, "1")]

    def test_releasing_base_deactivates_challenger(self, optimized):
        optimizer = PromptOptimizer(optimized, judge=None)
        optimizer.release_prompt_version(3, "1", original_endpoint_id=1)

        optimizer.release_prompt_version(1, "1")

        assert [v.active_version for v in optimized.list_versions(3)] == [False]
        assert [v.active_version for v in optimized.list_versions(1)] == [True]

    def test_release_without_original_resolves_base(self, optimized):
        optimizer = PromptOptimizer(optimized, judge=None)

        optimizer.release_prompt_version(3, "1")

        active = [(v.endpoint_id, v.version) for endpoint_id in (1, 3)
                  for v in optimized.list_versions(endpoint_id) if v.active_version]
        assert active == [(3, "1")]
        assert [(e.endpoint_id, e.version) for e in optimized.list_deploy_history(1)] == [(1, "1")]
        assert optimized.list_deploy_history(3) == []

    def test_releasing_a_later_version_leaves_one_active(self, store):
        for number in ("2", "3"):
            store.add_version(PromptVersion(endpoint_id=1, version=number, prompt=f"Extract totals (v{number})"))

        PromptOptimizer(store, judge=None).release_prompt_version(1, "3")

        assert [(v.version, v.active_version) for v in store.list_versions(1)] == [
            ("1", False), ("2", False), ("3", True),
        ]
        assert [e.version for e in store.list_deploy_history(1)] == ["3"]

    def test_unknown_version(self, optimized):
        with pytest.raises(NotFoundError):
            PromptOptimizer(optimized, judge=None).release_prompt_version(1, "7")

    def test_release_invalidates_cache(self, optimized):
        cache = InMemoryMetricsCache()
        cache.set(cache.key_for(3, "accuracy"), 0.5)
        optimizer = PromptOptimizer(optimized, judge=None, events=build_event_queue(cache))

        optimizer.release_prompt_version(3, "1", original_endpoint_id=1)

        assert cache.get(cache.key_for(3, "accuracy")) is None


def test_list_prompt_versions_renumbers_across_challenger(store):
    start = utcnow()
    store.list_versions(1)[0].created_at = start
    store.add_version(PromptVersion(endpoint_id=1, version="2", prompt="base v2",
                                    created_at=start + timedelta(seconds=20)))
    store.add_endpoint(MonitoredEndpoint(name="Challenger", is_optimized=True))
    store.add_challenger(ChallengerAssignment(base_endpoint_id=1, challenger_endpoint_id=3, principal=True))
    store.add_version(PromptVersion(endpoint_id=3, version="1", prompt="challenger v1",
                                    created_at=start + timedelta(seconds=10)))

    listing = PromptOptimizer(store, judge=None).list_prompt_versions(1)

    assert [(v["version"], v["endpoint_id"], v["original_version"]) for v in listing] == [
        ("1", 1, "1"),
        ("2", 3, "1"),
        ("3", 1, "2"),
    ]
