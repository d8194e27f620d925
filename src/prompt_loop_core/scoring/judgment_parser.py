"""
Judge output parsing

Turns raw judge completions into the structured judgment value objects.
Structured output is requested from every provider, but completions are
still parsed defensively: code fences are stripped and, for the generic
LLM prompt, a regex fallback reads "Correctness: 7/10" style answers.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from prompt_loop_core.domain.errors import ParseError
from prompt_loop_core.domain.value_objects import (
    ClassificationJudgment,
    LLMTriadJudgment,
    RubricScore,
)

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_TRIAD_RE = {
    name: re.compile(rf"{name}\s*[:：]\s*(\d+(?:\.\d+)?)\s*(?:/\s*10)?", re.IGNORECASE)
    for name in ("relevance", "coherence", "correctness")
}


def strip_code_fences(text: str) -> str:
    """Remove ```json / ``` markers around a completion"""
    return text.replace("```json", "").replace("```", "").strip()


def extract_json(raw: str) -> Any:
    """
    Extract a JSON document from a judge completion

    Parse order:
    1. Fenced code block
    2. The whole text
    3. The outermost {...} span

    Raises:
        ParseError: When no JSON document can be read
    """
    text = (raw or "").strip()
    candidates = []
    match = _FENCE_RE.search(text)
    if match:
        candidates.append(match.group(1))
    candidates.append(text)
    match = _OBJECT_RE.search(text)
    if match:
        candidates.append(match.group(0))

    for candidate in candidates:
        try:
            return json.loads(candidate.strip())
        except (json.JSONDecodeError, ValueError):
            continue
    raise ParseError(f"Failed to parse JSON from judge response: {text[:200]}")


def _clamp(value: float) -> float:
    """Clamp score to the range 0-10"""
    return max(0.0, min(10.0, value))


def _as_score(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise ParseError(f"'{field_name}' must be a number, got a boolean")
    try:
        return _clamp(float(value))
    except (TypeError, ValueError) as e:
        raise ParseError(f"'{field_name}' must be a number, got {value!r}") from e


def _as_errors(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, list):
        return [str(item) for item in value]
    raise ParseError(f"'errors' must be a list, got {type(value).__name__}")


def parse_rubric_score(raw: str, rubric_key: str) -> RubricScore:
    """
    Parse one rubric's {score, analysis, errors} answer

    Args:
        raw: Judge completion text
        rubric_key: Key of the rubric that produced the answer

    Raises:
        ParseError: When the answer is not a JSON object with a numeric score
    """
    data = extract_json(raw)
    if not isinstance(data, dict) or "score" not in data:
        raise ParseError(f"Rubric '{rubric_key}' response has no score")
    return RubricScore(
        evaluator=rubric_key,
        score=_as_score(data["score"], "score"),
        analysis=str(data.get("analysis") or ""),
        errors=_as_errors(data.get("errors")),
    )


def _first_present(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    raise KeyError(keys[0])


def parse_classification(raw: str) -> ClassificationJudgment:
    """
    Parse an expected-vs-predicted class answer

    Accepts the flat {modelOutput, expectedOutput} shape of the classification
    rubric and the nested {classificationAccuracy: {...}} shape of the generic
    classification prompt.
    """
    data = extract_json(raw)
    if not isinstance(data, dict):
        raise ParseError("Classification response is not a JSON object")

    source = data.get("classificationAccuracy", data)
    if not isinstance(source, dict):
        raise ParseError("'classificationAccuracy' is not a JSON object")
    try:
        model_output = _first_present(source, "modelOutput", "model_output")
        expected_output = _first_present(source, "expectedOutput", "expected_output")
    except KeyError as e:
        raise ParseError(f"Classification response is missing {e.args[0]}") from e

    extra = {
        key: value
        for key, value in data.items()
        if key not in ("modelOutput", "model_output", "expectedOutput", "expected_output", "classificationAccuracy")
    }
    return ClassificationJudgment(
        model_output=model_output,
        expected_output=expected_output,
        extra=extra,
    )


def parse_llm_triad(raw: str) -> LLMTriadJudgment:
    """
    Parse a relevance/coherence/correctness answer

    Parse order:
    1. JSON with a "metrics" object (or the three keys at the top level)
    2. Regex fallback over "Name: X/10" lines
    3. ParseError
    """
    try:
        data = extract_json(raw)
    except ParseError:
        data = None

    if isinstance(data, dict):
        metrics = data.get("metrics", data)
        if isinstance(metrics, dict) and all(k in metrics for k in _TRIAD_RE):
            extra = {k: v for k, v in data.items() if k not in ("metrics", *_TRIAD_RE)}
            return LLMTriadJudgment(
                relevance=_as_score(metrics["relevance"], "relevance"),
                coherence=_as_score(metrics["coherence"], "coherence"),
                correctness=_as_score(metrics["correctness"], "correctness"),
                extra=extra,
            )

    text = raw or ""
    found = {name: pattern.search(text) for name, pattern in _TRIAD_RE.items()}
    if all(found.values()):
        logger.warning("Judge answered in plain text; read triad scores with the regex fallback")
        return LLMTriadJudgment(
            relevance=_clamp(float(found["relevance"].group(1))),
            coherence=_clamp(float(found["coherence"].group(1))),
            correctness=_clamp(float(found["correctness"].group(1))),
        )

    raise ParseError(f"Failed to parse triad scores from judge response: {text.strip()[:200]}")


def parse_reviews(raw: str) -> list[dict[str, str]]:
    """
    Parse a {"reviews": [{problem, solution, description}]} answer

    Reviews missing a problem or a solution are dropped.
    """
    data = extract_json(raw)
    if isinstance(data, list):
        reviews = data
    elif isinstance(data, dict) and isinstance(data.get("reviews"), list):
        reviews = data["reviews"]
    else:
        raise ParseError("Review response has no 'reviews' list")

    parsed = []
    for review in reviews:
        if not isinstance(review, dict):
            continue
        problem = str(review.get("problem") or "").strip()
        solution = str(review.get("solution") or "").strip()
        if not problem or not solution:
            continue
        parsed.append(
            {
                "problem": problem,
                "solution": solution,
                "description": str(review.get("description") or "").strip(),
            }
        )
    return parsed
