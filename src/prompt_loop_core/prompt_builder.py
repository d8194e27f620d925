"""
Prompt Builder

Builds the judge requests used across the loop:
- rubric and generic evaluation requests for one execution record
- the verdict summary request
- the insight review request
- the prompt enhancement request
- the challenger replay request used by A/B comparison
"""

import json
import random
from typing import Any, Sequence

from .domain.constants import OutputStyle
from .domain.entities import ExecutionRecord, Insight
from .domain.value_objects import JudgeRequest, Message
from .record_parser import (
    parse_attachments,
    parse_context,
    parse_input_content,
    parse_output_content,
)
from .rubrics import (
    CLASSIFICATION_EVALUATION_SYSTEM_PROMPT,
    CLASSIFICATION_EVALUATION_USER_PROMPT,
    GENERIC_CLASSIFICATION_SCHEMA,
    GENERIC_SUMMARY_SYSTEM_PROMPT,
    GENERIC_SUMMARY_USER_PROMPT,
    LLM_EVALUATION_SYSTEM_PROMPT,
    LLM_EVALUATION_USER_PROMPT,
    LLM_TRIAD_SCHEMA,
    REVIEWS_SCHEMA,
    EvaluationRubric,
    RubricPipeline,
)


REVIEWER_SYSTEM_PROMPT = """You are a prompt reviewer. You receive one production output that \
was judged incorrect, the system prompt that produced it and the reason it was judged \
incorrect. Find the root causes in the system prompt and propose concrete fixes."""

PROMPT_ENHANCEMENT_SYSTEM_PROMPT = """You are an expert prompt optimization assistant. \
Critically analyze the original prompt, understand its intent, assumptions and expected \
outcomes, then rewrite it so that every listed problem is resolved.

Guidelines:
1. Keep the original purpose and expected outcomes.
2. Address every suggestion explicitly inside the rewritten prompt.
3. Clarify ambiguous terms, instructions and conditions.
4. Keep the original examples and notes; improve them, never remove them.
5. Output ONLY the enhanced prompt, without the original prompt or any commentary."""


def image_part(url: str) -> dict[str, Any]:
    """Chat content part referencing one image"""
    return {"type": "image_url", "image_url": {"url": url}}


def text_part(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def build_user_parts(
    record_input: Any,
    max_attachments: int | None = None,
    shuffle: bool = False,
    rng: random.Random | None = None,
) -> list[dict[str, Any]]:
    """
    Build the content parts describing a record's input

    Args:
        record_input: The record's raw input payload
        max_attachments: Keep only the first N attachments (None keeps all)
        shuffle: Whether to randomize attachment order (to avoid order bias)
        rng: Random generator used for shuffling (for reproducibility)

    Returns:
        The input text part followed by one part per image attachment
    """
    attachments = parse_attachments(record_input)
    if max_attachments is not None:
        attachments = attachments[:max_attachments]
    if shuffle and len(attachments) > 1:
        (rng or random).shuffle(attachments)
    return [text_part(parse_input_content(record_input))] + [image_part(url) for url in attachments]


def build_rubric_request(rubric: EvaluationRubric, record: ExecutionRecord) -> JudgeRequest:
    """Request asking one rubric to score one record"""
    context = parse_context(record.input) or ""
    messages: list[Message] = [
        {"role": "system", "content": f"{rubric.system_prompt}\n\n{context}".rstrip()},
        {
            "role": "user",
            "content": [
                text_part("User Input:"),
                *build_user_parts(record.input),
                text_part(f"Extracted Output: {parse_output_content(record.output)}"),
                text_part(rubric.user_prompt),
            ],
        },
    ]
    return JudgeRequest(messages=messages, response_schema=rubric.output_schema, schema_name=rubric.key)


def build_generic_request(record: ExecutionRecord, output_style: OutputStyle) -> JudgeRequest:
    """Single request for evaluators whose problem type has no rubric pipeline"""
    is_llm = OutputStyle(output_style) == OutputStyle.LLM
    context = parse_context(record.input) or ""
    messages: list[Message] = [
        {
            "role": "system",
            "content": LLM_EVALUATION_SYSTEM_PROMPT if is_llm else CLASSIFICATION_EVALUATION_SYSTEM_PROMPT,
        },
        {
            "role": "user",
            "content": [
                text_part(f"System Prompt: {context}"),
                text_part("User Input:"),
                *build_user_parts(record.input),
                text_part(f"Generated Output: {parse_output_content(record.output)}"),
                text_part(LLM_EVALUATION_USER_PROMPT if is_llm else CLASSIFICATION_EVALUATION_USER_PROMPT),
            ],
        },
    ]
    return JudgeRequest(
        messages=messages,
        response_schema=LLM_TRIAD_SCHEMA if is_llm else GENERIC_CLASSIFICATION_SCHEMA,
    )


def build_summary_request(payload: dict[str, Any], pipeline: RubricPipeline | None) -> JudgeRequest:
    """
    Request for a 2-3 line natural language explanation of a verdict

    Rubric payloads list every evaluation; other payloads are sent whole.
    """
    system_prompt = pipeline.summary_system_prompt if pipeline else GENERIC_SUMMARY_SYSTEM_PROMPT
    user_prompt = pipeline.summary_user_prompt if pipeline else GENERIC_SUMMARY_USER_PROMPT

    evaluations = payload.get("evaluations")
    if isinstance(evaluations, list) and evaluations:
        details = "\n\n".join(
            f"{evaluation.get('evaluator', 'rubric')} evaluation:\n"
            f"{json.dumps(evaluation, ensure_ascii=False)}"
            for evaluation in evaluations
        )
    else:
        details = json.dumps(
            {key: value for key, value in payload.items() if key != "summary"},
            ensure_ascii=False,
            default=str,
        )

    messages: list[Message] = [
        {"role": "system", "content": system_prompt},
        {
            "role": "user",
            "content": f"{user_prompt}\n\n{details}\n\n"
            f"The verdict is: {'CORRECT' if payload.get('correct') else 'INCORRECT'}. "
            "Explain only why.",
        },
    ]
    return JudgeRequest(messages=messages)


def _review_findings(actual: dict[str, Any] | None) -> str:
    """Describe why a record was judged incorrect"""
    actual = actual or {}
    if "class" in actual or "model_class" in actual:
        return (
            f"- Expected Output: {json.dumps(actual.get('class'), ensure_ascii=False, default=str)}\n"
            f"- Predicted Output: {json.dumps(actual.get('model_class'), ensure_ascii=False, default=str)}"
        )
    lines = [f"- Reason of error: {actual.get('summary') or 'n/a'}"]
    for evaluation in actual.get("evaluations") or []:
        lines.append(
            f"- {evaluation.get('evaluator')}: {evaluation.get('score')}/10. "
            f"{evaluation.get('analysis', '')}"
        )
    if "metrics" in actual:
        lines.append(f"- Scores: {json.dumps(actual['metrics'], ensure_ascii=False)}")
    return "\n".join(lines)


def build_review_request(
    record: ExecutionRecord,
    endpoint_prompt: str,
    prior_insights: Sequence[Insight] = (),
    reviewer_prompt: str | None = None,
    max_attachments: int = 5,
    max_problem_chars: int = 200,
    max_solution_chars: int = 500,
    max_description_chars: int = 800,
    rng: random.Random | None = None,
) -> JudgeRequest:
    """
    Request asking for root causes and fixes of one incorrect record

    Args:
        record: The record judged incorrect
        endpoint_prompt: The endpoint's current prompt, used when the record carries no system message
        prior_insights: Existing insights listed as already known
        reviewer_prompt: System prompt of a dedicated reviewer endpoint
        max_attachments: Number of image attachments kept (in random order)
        rng: Random generator used for shuffling attachments
    """
    context = parse_context(record.input) or endpoint_prompt
    known = "\n".join(f"- {insight.problem}: {insight.solution}" for insight in prior_insights) or "- none"

    task = f"""### Context (System Prompt)
{context}

### Generated Output
{parse_output_content(record.output)}

### Review Output
{_review_findings(record.actual)}

### Previous Insights
{known}

### Task
Analyze why the generated output deviates from what the system prompt asks for. Look for:
1. Ambiguity: unclear or conflicting instructions.
2. Missing guidance: details or rules the prompt does not state.
3. Misalignment: the prompt steers the model away from the desired response.

Do not restate the previous insights. Prefer general improvements over fixes for this single case.
Answer in English. Keep each problem under {max_problem_chars} characters, each solution under \
{max_solution_chars} characters and each description under {max_description_chars} characters."""

    messages: list[Message] = [
        {"role": "system", "content": reviewer_prompt or REVIEWER_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": [
                *build_user_parts(record.input, max_attachments=max_attachments, shuffle=True, rng=rng),
                text_part(task),
            ],
        },
    ]
    return JudgeRequest(messages=messages, response_schema=REVIEWS_SCHEMA, schema_name="reviews")


def build_enhancement_request(original_prompt: str, insights: Sequence[Insight]) -> JudgeRequest:
    """Request rewriting a prompt so that it addresses every insight, in priority order"""
    suggestions = "\n\n".join(
        f"{i + 1}. Problem Identified: {insight.description or insight.problem}\n"
        f"   Suggested Solution: {insight.solution}"
        for i, insight in enumerate(insights)
    )
    user_prompt = f"""Original Prompt:
{original_prompt}

Incorporate the following suggestions to enhance the original prompt, listed by priority:

{suggestions}

Only output the enhanced prompt itself, with no additional text or explanations. \
Always keep the examples and important notes of the original prompt."""

    messages: list[Message] = [
        {"role": "system", "content": PROMPT_ENHANCEMENT_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]
    return JudgeRequest(messages=messages)


def build_replay_request(challenger_prompt: str, record: ExecutionRecord) -> JudgeRequest:
    """Replay a base record's input through a challenger prompt"""
    parts = build_user_parts(record.input)
    content: str | list[dict[str, Any]] = parts[0]["text"] if len(parts) == 1 else parts
    messages: list[Message] = [
        {"role": "system", "content": challenger_prompt},
        {"role": "user", "content": content},
    ]
    return JudgeRequest(messages=messages)
