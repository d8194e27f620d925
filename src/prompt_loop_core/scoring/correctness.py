"""
Correctness classification

Maps one of the three judge output shapes to a canonical payload carrying a
``correct`` verdict. Every function here is pure; callers persist the result.
"""

from __future__ import annotations

import json
from typing import Any

from prompt_loop_core.domain.constants import (
    CORRECT_SCORE_THRESHOLD,
    EMPTY_SENTINELS,
    OutputStyle,
    ProblemType,
    RecordStatus,
)
from prompt_loop_core.domain.value_objects import (
    ClassificationJudgment,
    Judgment,
    LLMTriadJudgment,
    RubricListJudgment,
)

_MISSING = object()


def judgment_kind_for(
    problem_type: ProblemType,
    has_pipeline: bool,
    output_style: OutputStyle = OutputStyle.LLM,
) -> type:
    """
    Resolve which judgment shape an evaluator produces

    Classification evaluators always compare expected and predicted classes.
    Evaluators with a rubric pipeline produce a rubric list; the others fall
    back to the generic prompt selected by their output style.
    """
    if ProblemType.parse(problem_type) == ProblemType.CLASSIFICATION:
        return ClassificationJudgment
    if has_pipeline:
        return RubricListJudgment
    if OutputStyle(output_style) == OutputStyle.LLM:
        return LLMTriadJudgment
    return ClassificationJudgment


def _is_sentinel(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and value.strip().lower() in EMPTY_SENTINELS


def clean_value(value: Any) -> Any:
    """
    Recursively drop sentinel fields (None, "", "none", "null", "undefined")

    Containers that become empty after cleaning are dropped from their parent.
    Scalars are returned unchanged.
    """
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            if _is_sentinel(item):
                continue
            item = clean_value(item)
            if isinstance(item, (dict, list)) and not item:
                continue
            cleaned[key] = item
        return cleaned
    if isinstance(value, list):
        cleaned_items = []
        for item in value:
            if _is_sentinel(item):
                continue
            item = clean_value(item)
            if isinstance(item, (dict, list)) and not item:
                continue
            cleaned_items.append(item)
        return cleaned_items
    return value


def try_parse_json(value: Any) -> Any:
    """Parse a JSON string if possible, otherwise return the value as-is"""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return value


def classes_match(expected: Any, predicted: Any) -> bool:
    """
    Compare an expected and a predicted class

    Structured values are compared after cleaning; otherwise raw equality,
    then equality of their JSON encodings.
    """
    if isinstance(expected, (dict, list)) and isinstance(predicted, (dict, list)):
        return clean_value(expected) == clean_value(predicted)
    if expected == predicted:
        return True
    try:
        return json.dumps(expected, sort_keys=True) == json.dumps(predicted, sort_keys=True)
    except (TypeError, ValueError):
        return False


def classify(judgment: Judgment, threshold: float = CORRECT_SCORE_THRESHOLD) -> dict[str, Any]:
    """
    Build the canonical payload for a judgment

    Args:
        judgment: One of RubricListJudgment, ClassificationJudgment, LLMTriadJudgment
        threshold: Minimum 0-10 score counted as passing

    Returns:
        Payload dict with a boolean ``correct`` key
    """
    if isinstance(judgment, RubricListJudgment):
        payload: dict[str, Any] = {
            "evaluations": [score.to_dict() for score in judgment.evaluations],
            "correct": bool(judgment.evaluations)
            and all(score.score >= threshold for score in judgment.evaluations),
        }
        for score in judgment.evaluations:
            payload[score.evaluator] = score.score
        return payload

    if isinstance(judgment, ClassificationJudgment):
        expected = try_parse_json(judgment.expected_output)
        predicted = try_parse_json(judgment.model_output)
        payload = dict(judgment.extra)
        payload.update(
            {
                "class": expected,
                "model_class": predicted,
                "correct": classes_match(expected, predicted),
            }
        )
        return payload

    if isinstance(judgment, LLMTriadJudgment):
        payload = dict(judgment.extra)
        payload.update(
            {
                "metrics": {
                    "relevance": judgment.relevance,
                    "coherence": judgment.coherence,
                    "correctness": judgment.correctness,
                },
                "relevance": judgment.relevance,
                "coherence": judgment.coherence,
                "correct": judgment.correctness >= threshold,
            }
        )
        return payload

    raise TypeError(f"Unsupported judgment type: {type(judgment).__name__}")


def is_correct(actual: dict[str, Any] | None, status: RecordStatus | str | None = None) -> bool:
    """
    Verdict of an already persisted payload

    An errored record or a missing payload is never correct. An explicit
    ``correct`` key wins (numeric values are rounded); otherwise the stored
    expected and predicted classes are compared.
    """
    if status is not None and RecordStatus(status) == RecordStatus.ERROR:
        return False
    if not actual:
        return False

    verdict = actual.get("correct", _MISSING)
    if verdict is not _MISSING:
        if isinstance(verdict, bool):
            return verdict
        try:
            return round(float(verdict)) == 1
        except (TypeError, ValueError):
            return False

    return classes_match(actual.get("class"), actual.get("model_class"))
