"""
Scoring sub-package

Provides judge output parsing and the correctness classifier.
"""

from prompt_loop_core.scoring.correctness import (
    classes_match,
    classify,
    clean_value,
    is_correct,
    judgment_kind_for,
    try_parse_json,
)
from prompt_loop_core.scoring.judgment_parser import (
    extract_json,
    parse_classification,
    parse_llm_triad,
    parse_reviews,
    parse_rubric_score,
    strip_code_fences,
)

__all__ = [
    # correctness
    "classes_match",
    "classify",
    "clean_value",
    "is_correct",
    "judgment_kind_for",
    "try_parse_json",
    # judge output parsing
    "extract_json",
    "parse_classification",
    "parse_llm_triad",
    "parse_reviews",
    "parse_rubric_score",
    "strip_code_fences",
]
