"""
Use Cases Layer

Aggregates the engines of the evaluation loop called from the runner.
"""

from prompt_loop_core.use_cases.ab_comparison import (
    ABComparison,
    ABComparisonExecutor,
    ABRunReport,
    compare_ab_results,
)
from prompt_loop_core.use_cases.batch_reconciler import BatchReconciler, group_results_by_record
from prompt_loop_core.use_cases.evaluation import (
    EvaluationExecutor,
    make_custom_id,
    parse_custom_id,
)
from prompt_loop_core.use_cases.health_check import (
    HEALTH_CHECK_PROMPT,
    health_check_judge,
    run_health_check,
)
from prompt_loop_core.use_cases.insights import InsightGenerator, current_version
from prompt_loop_core.use_cases.prompt_optimizer import (
    PromptOptimizer,
    active_prompt,
    next_version_number,
)
from prompt_loop_core.use_cases.sampler import (
    ActivationController,
    compute_sample_size,
    select_records,
)

__all__ = [
    # ab_comparison
    "ABComparison",
    "ABComparisonExecutor",
    "ABRunReport",
    "compare_ab_results",
    # batch_reconciler
    "BatchReconciler",
    "group_results_by_record",
    # evaluation
    "EvaluationExecutor",
    "make_custom_id",
    "parse_custom_id",
    # health_check
    "HEALTH_CHECK_PROMPT",
    "health_check_judge",
    "run_health_check",
    # insights
    "InsightGenerator",
    "current_version",
    # prompt_optimizer
    "PromptOptimizer",
    "active_prompt",
    "next_version_number",
    # sampler
    "ActivationController",
    "compute_sample_size",
    "select_records",
]
