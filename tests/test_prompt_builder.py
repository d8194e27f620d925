"""
prompt_builder.py unit tests
"""

import random

import pytest

from prompt_loop_core.domain.constants import OutputStyle, ProblemType
from prompt_loop_core.domain.entities import ExecutionRecord, Insight
from prompt_loop_core.prompt_builder import (
    PROMPT_ENHANCEMENT_SYSTEM_PROMPT,
    REVIEWER_SYSTEM_PROMPT,
    build_enhancement_request,
    build_generic_request,
    build_replay_request,
    build_review_request,
    build_rubric_request,
    build_summary_request,
    build_user_parts,
)
from prompt_loop_core.rubrics import (
    GENERIC_CLASSIFICATION_SCHEMA,
    LLM_TRIAD_SCHEMA,
    REVIEWS_SCHEMA,
    get_pipeline,
)


IMAGES = [f"data:image/png;base64,AAA{i}" for i in range(7)]


@pytest.fixture
def record():
    """Record with a system prompt, user text and one image"""
    return ExecutionRecord(
        id=1,
        endpoint_id=1,
        input=[
            {"role": "system", "content": "Extract the total."},
            {"role": "user", "content": [
                {"type": "text", "text": "Invoice #12"},
                {"type": "image_url", "image_url": {"url": IMAGES[0]}},
            ]},
        ],
        output={"choices": [{"message": {"content": "{\"total\": 10}"}}]},
    )


@pytest.fixture
def insights():
    return [
        Insight(endpoint_id=1, problem="Currency missing", solution="Always add currency",
                description="Totals lack a currency code", version_tag="1-1"),
        Insight(endpoint_id=1, problem="Dates", solution="Use ISO dates", description="", version_tag="1-1"),
    ]


def _texts(message):
    return [part["text"] for part in message["content"] if part["type"] == "text"]


class TestBuildUserParts:
    def test_text_first_then_images(self, record):
        parts = build_user_parts(record.input)
        assert parts[0] == {"type": "text", "text": "Invoice #12"}
        assert parts[1]["image_url"]["url"] == IMAGES[0]

    def test_attachment_cap(self):
        data = {"text": "many", "images": IMAGES}
        parts = build_user_parts(data, max_attachments=5)
        assert len(parts) == 6

    def test_shuffle_is_reproducible(self):
        data = {"text": "many", "images": IMAGES}
        first = build_user_parts(data, shuffle=True, rng=random.Random(3))
        second = build_user_parts(data, shuffle=True, rng=random.Random(3))
        assert first == second
        assert sorted(p["image_url"]["url"] for p in first[1:]) == IMAGES


class TestEvaluationRequests:
    def test_rubric_request(self, record):
        rubric = get_pipeline(ProblemType.DATA_EXTRACTION).rubric("completeness")
        request = build_rubric_request(rubric, record)

        assert request.schema_name == "completeness"
        assert request.response_schema == rubric.output_schema
        assert request.messages[0]["content"].endswith("Extract the total.")
        texts = _texts(request.messages[1])
        assert "Invoice #12" in texts
        assert 'Extracted Output: {"total": 10}' in texts
        assert request.attachment_count == 1

    def test_generic_llm_request(self, record):
        request = build_generic_request(record, OutputStyle.LLM)
        assert request.response_schema == LLM_TRIAD_SCHEMA
        assert "System Prompt: Extract the total." in _texts(request.messages[1])

    def test_generic_classification_request(self, record):
        request = build_generic_request(record, "classification")
        assert request.response_schema == GENERIC_CLASSIFICATION_SCHEMA


class TestSummaryRequest:
    def test_rubric_payload_lists_evaluations(self):
        pipeline = get_pipeline(ProblemType.MAPPING)
        payload = {
            "correct": False,
            "evaluations": [{"evaluator": "correctness", "score": 4, "analysis": "wrong id"}],
        }
        request = build_summary_request(payload, pipeline)

        assert request.messages[0]["content"] == pipeline.summary_system_prompt
        assert "correctness evaluation:" in request.messages[1]["content"]
        assert "The verdict is: INCORRECT" in request.messages[1]["content"]
        assert request.response_schema is None

    def test_generic_payload_drops_summary(self):
        request = build_summary_request({"correct": True, "feedback": "fine", "summary": "old"}, None)
        content = request.messages[1]["content"]
        assert "fine" in content
        assert "old" not in content
        assert "CORRECT" in content


class TestReviewRequest:
    def test_structure(self, record, insights):
        record.actual = {
            "correct": False,
            "summary": "Total misses currency",
            "evaluations": [{"evaluator": "correctness", "score": 5, "analysis": "no currency"}],
        }
        request = build_review_request(record, "fallback prompt", prior_insights=insights)

        assert request.schema_name == "reviews"
        assert request.response_schema == REVIEWS_SCHEMA
        assert request.messages[0]["content"] == REVIEWER_SYSTEM_PROMPT
        task = _texts(request.messages[1])[-1]
        assert "Extract the total." in task
        assert "Reason of error: Total misses currency" in task
        assert "- Currency missing: Always add currency" in task

    def test_endpoint_prompt_when_no_context(self, insights):
        record = ExecutionRecord(endpoint_id=1, input="plain", output="x",
                                 actual={"class": "A", "model_class": "B"})
        request = build_review_request(record, "endpoint prompt", reviewer_prompt="Custom reviewer")

        task = _texts(request.messages[1])[-1]
        assert "endpoint prompt" in task
        assert 'Expected Output: "A"' in task
        assert "Previous Insights\n- none" in task
        assert request.messages[0]["content"] == "Custom reviewer"

    def test_attachments_are_capped(self):
        record = ExecutionRecord(endpoint_id=1, input={"text": "t", "images": IMAGES}, output="x")
        request = build_review_request(record, "p", max_attachments=5, rng=random.Random(0))
        assert request.attachment_count == 5


def test_enhancement_request_lists_insights_in_order(insights):
    request = build_enhancement_request("Original", insights)
    content = request.messages[1]["content"]

    assert request.messages[0]["content"] == PROMPT_ENHANCEMENT_SYSTEM_PROMPT
    assert content.startswith("Original Prompt:\nOriginal")
    assert content.index("1. Problem Identified: Totals lack a currency code") < content.index(
        "2. Problem Identified: Dates"
    )


class TestReplayRequest:
    def test_text_only_input_is_a_string(self):
        record = ExecutionRecord(endpoint_id=1, input={"input": "hello"}, output="x")
        request = build_replay_request("New prompt", record)
        assert request.messages == [
            {"role": "system", "content": "New prompt"},
            {"role": "user", "content": "hello"},
        ]

    def test_images_become_parts(self, record):
        request = build_replay_request("New prompt", record)
        assert isinstance(request.messages[1]["content"], list)
        assert request.attachment_count == 1
