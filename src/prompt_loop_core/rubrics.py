"""
Rubric pipelines

Each problem type with a dedicated pipeline is judged by an ordered list of
rubrics, each asking the judge for a 0-10 score with analysis and errors.
Problem types without a pipeline fall back to one generic prompt selected by
the evaluator's output style.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from prompt_loop_core.domain.constants import ACCURACY_RUBRIC_KEY, ProblemType
from prompt_loop_core.domain.value_objects import RubricScore

# ---------------------------------------------------------------------------
# Structured-output schemas
# ---------------------------------------------------------------------------

RUBRIC_SCORE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "score": {"type": "number"},
        "analysis": {"type": "string"},
        "errors": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["score", "analysis", "errors"],
    "additionalProperties": False,
}

CLASSIFICATION_RUBRIC_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "modelOutput": {"type": "string"},
        "expectedOutput": {"type": "string"},
        "analysis": {"type": "string"},
        "errors": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["modelOutput", "expectedOutput", "analysis", "errors"],
    "additionalProperties": False,
}

GENERIC_CLASSIFICATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "classificationAccuracy": {
            "type": "object",
            "properties": {
                "modelOutput": {"type": "string"},
                "expectedOutput": {"type": "string"},
            },
            "required": ["modelOutput", "expectedOutput"],
        },
        "reasoningQuality": {"type": "object", "properties": {"score": {"type": "number"}}},
        "outputFormatting": {"type": "object", "properties": {"score": {"type": "number"}}},
        "confidenceLevel": {"type": "string", "enum": ["High", "Moderate", "Low"]},
        "feedback": {"type": "string"},
    },
    "required": ["classificationAccuracy", "confidenceLevel", "feedback"],
}

LLM_TRIAD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "metrics": {
            "type": "object",
            "properties": {
                "relevance": {"type": "number"},
                "coherence": {"type": "number"},
                "correctness": {"type": "number"},
            },
            "required": ["relevance", "coherence", "correctness"],
        },
        "confidenceLevel": {"type": "string", "enum": ["High", "Moderate", "Low"]},
        "feedback": {"type": "string"},
    },
    "required": ["metrics", "confidenceLevel", "feedback"],
}

REVIEWS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "reviews": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "problem": {"type": "string"},
                    "solution": {"type": "string"},
                    "description": {"type": "string"},
                },
                "required": ["problem", "solution", "description"],
            },
        },
    },
    "required": ["reviews"],
}


@dataclass(frozen=True)
class EvaluationRubric:
    """One judge prompt of a pipeline"""
    key: str
    name: str
    system_prompt: str
    user_prompt: str
    output_schema: dict[str, Any] = field(default_factory=lambda: RUBRIC_SCORE_SCHEMA)
    classification: bool = False


@dataclass(frozen=True)
class RubricPipeline:
    """Ordered rubrics for one problem type plus its summary prompts"""
    problem_type: ProblemType
    rubrics: tuple[EvaluationRubric, ...]
    summary_system_prompt: str
    summary_user_prompt: str
    synthesizes_accuracy: bool = False

    @property
    def rubric_keys(self) -> list[str]:
        return [rubric.key for rubric in self.rubrics]

    def rubric(self, key: str) -> EvaluationRubric:
        for rubric in self.rubrics:
            if rubric.key == key:
                return rubric
        raise KeyError(key)


_SCORE_SCALE = """Scoring scale:
  10 = Perfect: every value matches the user input and the system prompt rules.
  8-9 = Minor issue: small slip, meaning intact.
  4-7 = Moderate: several wrong or missing values, output partially useful.
  0-3 = Severe: hallucinated data or major misinterpretation."""

_SCORE_ANSWER = """Return a JSON object:
{
  "score": (number from 0 to 10),
  "analysis": "Concise summary of the evaluation.",
  "errors": ["One entry per concrete error"]
}"""

_EXTRACTION_SUMMARY_SYSTEM = """You receive the rubric evaluations of one model output \
(correctness, completeness, format adherence and their average, accuracy). \
Summarize in 2-3 lines whether the output is fully correct or state exactly what is wrong.

Constraints:
- Plain text only, no structured object.
- If every evaluation passed, say so explicitly.
- If there are errors, list them concisely: missing fields, wrong values, formatting problems.
- The evaluations are assumed to be right; explain the verdict, do not critique them."""

_EXTRACTION_SUMMARY_USER = """Here are the rubric evaluations. Write a short, direct summary \
(2-3 lines) of why the output is correct or incorrect. Some values may legitimately be absent \
from the user input: cross-check completeness with correctness before calling a value missing."""

DATA_EXTRACTION_PIPELINE = RubricPipeline(
    problem_type=ProblemType.DATA_EXTRACTION,
    rubrics=(
        EvaluationRubric(
            key="correctness",
            name="Correctness Evaluation",
            system_prompt=f"""You are an expert evaluator of data extraction accuracy.
Verify that every extracted value is factually identical to the user input and follows the \
system prompt's rules.

- Evaluate only the values that were extracted; missing values are judged elsewhere.
- Compare character by character: a wrong digit, unit or decimal is an error.
- Any value that does not exist in the user input is a hallucination.
- Empty values ("", "N/A", null) are acceptable unless the system prompt forbids them.
- Do not assess formatting or structure.

{_SCORE_SCALE}

System prompt being evaluated:""",
            user_prompt=f"""Check every extracted value against the user input, character by character.

{_SCORE_ANSWER}""",
        ),
        EvaluationRubric(
            key="completeness",
            name="Completeness Evaluation",
            system_prompt=f"""You are an expert evaluator of data extraction completeness.
Determine whether the output contains every field that is present in the user input and \
required by the system prompt.

- A field is missing only if it exists in the input but was not extracted.
- Fields absent from the input may be empty; do not penalize them.
- Do not assess accuracy or formatting.

{_SCORE_SCALE}

System prompt being evaluated:""",
            user_prompt=f"""List every field that exists in the user input but is missing from the output.

{_SCORE_ANSWER}""",
        ),
        EvaluationRubric(
            key="format_adherence",
            name="Format Adherence Evaluation",
            system_prompt=f"""You are an expert evaluator of output format adherence.
Determine whether the output follows the structure required by the system prompt: field \
names, nesting, types, date and number formats, and the absence of extra commentary.

- Do not assess whether values are correct or complete.
- Extra keys or prose around the structured output are formatting errors.

{_SCORE_SCALE}

System prompt being evaluated:""",
            user_prompt=f"""Check the output structure against the format required by the system prompt.

{_SCORE_ANSWER}""",
        ),
    ),
    summary_system_prompt=_EXTRACTION_SUMMARY_SYSTEM,
    summary_user_prompt=_EXTRACTION_SUMMARY_USER,
    synthesizes_accuracy=True,
)

MAPPING_PIPELINE = RubricPipeline(
    problem_type=ProblemType.MAPPING,
    rubrics=(
        EvaluationRubric(
            key="correctness",
            name="Mapping Correctness Evaluation",
            system_prompt=f"""You are an expert evaluator of data mapping.
Verify that each source value from the user input was mapped to the correct target field \
and transformed exactly as the system prompt's mapping rules require.

- A value placed in the wrong target field is an error.
- A transformation (unit, date, code lookup) that deviates from the rules is an error.
- Values not present in the source must not be invented.

{_SCORE_SCALE}

System prompt being evaluated:""",
            user_prompt=f"""Check every mapped value against the source input and the mapping rules.

{_SCORE_ANSWER}""",
        ),
        EvaluationRubric(
            key="completeness",
            name="Mapping Completeness Evaluation",
            system_prompt=f"""You are an expert evaluator of data mapping completeness.
Determine whether every target field that can be filled from the user input was filled.

- A target field is missing only if its source value exists in the input.
- Do not assess whether values are correct.

{_SCORE_SCALE}

System prompt being evaluated:""",
            user_prompt=f"""List every target field whose source value exists but was not mapped.

{_SCORE_ANSWER}""",
        ),
        EvaluationRubric(
            key="format_adherence",
            name="Mapping Format Evaluation",
            system_prompt=f"""You are an expert evaluator of output format adherence for data mapping.
Determine whether the output uses exactly the target schema required by the system prompt.

- Field names, nesting and types must match the target schema.
- Extra keys or prose are formatting errors.

{_SCORE_SCALE}

System prompt being evaluated:""",
            user_prompt=f"""Check the output against the target schema.

{_SCORE_ANSWER}""",
        ),
    ),
    summary_system_prompt=_EXTRACTION_SUMMARY_SYSTEM,
    summary_user_prompt=_EXTRACTION_SUMMARY_USER,
    synthesizes_accuracy=True,
)

CLASSIFICATION_PIPELINE = RubricPipeline(
    problem_type=ProblemType.CLASSIFICATION,
    rubrics=(
        EvaluationRubric(
            key="correctness",
            name="Classification Evaluation",
            system_prompt="""You are an expert evaluator of classification models.
1. Ignore the model's answer and derive the expected output from the system prompt rules \
and the input (text or images), including default or fallback labels.
2. Copy the model's output verbatim.
3. Compare both. If any component (label, category, type, provider) differs, or a required \
default was not applied, the classification is incorrect.

System prompt being evaluated:""",
            user_prompt="""Derive the expected output from the system prompt and the input, copy the \
model output verbatim, and compare them strictly.

Return a JSON object:
{
  "modelOutput": "Output from the model",
  "expectedOutput": "Expected output derived from the system prompt",
  "analysis": "Analysis of the classification",
  "errors": ["List of errors"]
}""",
            output_schema=CLASSIFICATION_RUBRIC_SCHEMA,
            classification=True,
        ),
    ),
    summary_system_prompt="""You receive the evaluation of one classification output: the class the \
model produced and the class it should have produced. Summarize in 2-3 lines whether the \
classification is correct or exactly which component is wrong. Plain text only.""",
    summary_user_prompt="""Here is the classification evaluation. Write a short, direct summary \
(2-3 lines) of why the classification is correct or incorrect.""",
)

PIPELINES: dict[ProblemType, RubricPipeline] = {
    ProblemType.DATA_EXTRACTION: DATA_EXTRACTION_PIPELINE,
    ProblemType.MAPPING: MAPPING_PIPELINE,
    ProblemType.CLASSIFICATION: CLASSIFICATION_PIPELINE,
}


def get_pipeline(problem_type: ProblemType | str) -> RubricPipeline | None:
    """Return the rubric pipeline of a problem type, or None for the generic prompt"""
    return PIPELINES.get(ProblemType.parse(problem_type))


# ---------------------------------------------------------------------------
# Generic prompts (problem types without a pipeline)
# ---------------------------------------------------------------------------

LLM_EVALUATION_SYSTEM_PROMPT = """You are a strict evaluator of generated responses.
Judge only the final output against the system prompt rules and the user input; do not \
speculate about the model's reasoning.

Score each dimension from 0 to 10:
- Relevance: the output addresses what the user input asks for.
- Coherence: the output is well structured and internally consistent.
- Correctness: every required detail is present and nothing contradicts the system prompt \
or the user input. Any missing, misformatted or contradicting detail puts correctness below 5. \
Correctly applied fallback rules are not errors.

Assign a confidence level (High, Moderate, Low) and give 2-3 lines of feedback naming the \
correct value for anything that is wrong."""

LLM_EVALUATION_USER_PROMPT = """Evaluate the generated output strictly against the system prompt rules.

Return a JSON object:
{
  "metrics": {"relevance": X, "coherence": X, "correctness": X},
  "confidenceLevel": "High" | "Moderate" | "Low",
  "feedback": "Concise critique, 2-3 lines"
}"""

CLASSIFICATION_EVALUATION_SYSTEM_PROMPT = """You are an expert evaluator of classification models.
1. Ignore the model's answer and derive the expected output from the system prompt rules and \
the input (text or images), including default or fallback labels.
2. Copy the model's output verbatim.
3. Compare both. Any wrong component or ignored default makes the classification incorrect.
4. Score reasoning quality (0-10, only if an explanation is given) and output formatting \
(0-10), and assign a confidence level (High, Moderate, Low)."""

CLASSIFICATION_EVALUATION_USER_PROMPT = """Evaluate the classification output using the system prompt \
as the absolute guide.

Return a JSON object:
{
  "classificationAccuracy": {"modelOutput": "...", "expectedOutput": "..."},
  "reasoningQuality": {"score": X},
  "outputFormatting": {"score": X},
  "confidenceLevel": "High" | "Moderate" | "Low",
  "feedback": "Concise explanation, 2-3 lines"
}"""

GENERIC_SUMMARY_SYSTEM_PROMPT = """You receive the evaluation of one model output. Summarize in 2-3 \
lines why the output was judged correct or incorrect. Plain text only, no structured object. \
The evaluation is assumed to be right; explain the verdict, do not critique it."""

GENERIC_SUMMARY_USER_PROMPT = """Here is the evaluation. Write a short, direct summary (2-3 lines) \
of why the output is correct or incorrect."""


# ---------------------------------------------------------------------------
# Derived rubric
# ---------------------------------------------------------------------------

def synthesize_accuracy(scores: list[RubricScore]) -> RubricScore:
    """
    Derive the "accuracy" rubric by averaging the other rubric scores

    Analyses are joined line by line and error lists are concatenated.

    Raises:
        ValueError: When there is nothing to average
    """
    if not scores:
        raise ValueError("Cannot synthesize accuracy from an empty rubric list")
    return RubricScore(
        evaluator=ACCURACY_RUBRIC_KEY,
        score=sum(score.score for score in scores) / len(scores),
        analysis="\n".join(score.analysis for score in scores),
        errors=[error for score in scores for error in score.errors],
    )


def complete_rubric_scores(pipeline: RubricPipeline, scores: list[RubricScore]) -> list[RubricScore]:
    """Append the synthesized accuracy rubric when the pipeline expects it and it is absent"""
    if not pipeline.synthesizes_accuracy or not scores:
        return list(scores)
    if any(score.evaluator == ACCURACY_RUBRIC_KEY for score in scores):
        return list(scores)
    return [*scores, synthesize_accuracy(scores)]
