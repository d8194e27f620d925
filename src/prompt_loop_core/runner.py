"""
prompt-loop-core CLI Runner

Runs one step of the evaluation loop against a JSON state file.

Usage:
    python -m prompt_loop_core.runner --state state.json evaluate --endpoint-id 1
    python -m prompt_loop_core.runner --state state.json evaluate --endpoint-id 1 --batch
    python -m prompt_loop_core.runner --state state.json check-batches
    python -m prompt_loop_core.runner --state state.json insights --endpoint-id 1
    python -m prompt_loop_core.runner --state state.json optimize --endpoint-id 1
    python -m prompt_loop_core.runner --state state.json release --endpoint-id 2 --version 1 --original-endpoint-id 1
    python -m prompt_loop_core.runner --state state.json ab-test --endpoint-id 1
    python -m prompt_loop_core.runner --state state.json ab-report --endpoint-id 1 --challenger-id 2
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

import pandas as pd
from dotenv import load_dotenv

from prompt_loop_core.domain.errors import PromptLoopError
from prompt_loop_core.infrastructure.events import EventQueue, build_event_queue
from prompt_loop_core.infrastructure.judge_clients.factory import (
    create_batch_judge_client,
    create_judge_client,
)
from prompt_loop_core.infrastructure.memory_store import InMemoryMetricsCache, InMemoryStore
from prompt_loop_core.infrastructure.snapshot import load_snapshot, save_snapshot
from prompt_loop_core.loop_config import LoopConfig, load_config, load_judge_settings
from prompt_loop_core.use_cases.ab_comparison import ABComparisonExecutor, compare_ab_results
from prompt_loop_core.use_cases.batch_reconciler import BatchReconciler
from prompt_loop_core.use_cases.evaluation import EvaluationExecutor
from prompt_loop_core.use_cases.health_check import run_health_check
from prompt_loop_core.use_cases.insights import InsightGenerator
from prompt_loop_core.use_cases.prompt_optimizer import PromptOptimizer

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="prompt-loop-core: Evaluate, review and optimize a production LLM endpoint",
    )
    parser.add_argument(
        "--state",
        default="state.json",
        help="Path to the JSON state file (default: state.json)",
    )
    parser.add_argument(
        "--output-dir",
        default="results",
        help="Directory for output CSV files (default: results)",
    )
    parser.add_argument(
        "--skip-health-check",
        action="store_true",
        help="Do not ping the judges before running",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    evaluate = sub.add_parser("evaluate", help="Run one evaluation cycle for an endpoint")
    evaluate.add_argument("--endpoint-id", type=int, required=True)
    evaluate.add_argument(
        "--batch",
        action="store_true",
        default=None,
        help="Submit the cycle as a provider batch job (default: LOOP_BATCH_ENABLED)",
    )

    sub.add_parser("check-batches", help="Reconcile pending batch jobs")

    insights = sub.add_parser("insights", help="Review incorrect records of an endpoint")
    insights.add_argument("--endpoint-id", type=int, required=True)
    insights.add_argument("--limit", type=int, default=None)

    optimize = sub.add_parser("optimize", help="Rewrite an endpoint's prompt from its insights")
    optimize.add_argument("--endpoint-id", type=int, required=True)

    from_error = sub.add_parser("optimize-from-error", help="Review one incorrect record, then optimize")
    from_error.add_argument("--record-id", type=int, required=True)

    release = sub.add_parser("release", help="Activate one prompt version")
    release.add_argument("--endpoint-id", type=int, required=True)
    release.add_argument("--version", required=True)
    release.add_argument("--original-endpoint-id", type=int, default=None)

    ab_test = sub.add_parser("ab-test", help="Replay history through every challenger")
    ab_test.add_argument("--endpoint-id", type=int, required=True)

    ab_report = sub.add_parser("ab-report", help="Compare base and challenger verdicts")
    ab_report.add_argument("--endpoint-id", type=int, required=True)
    ab_report.add_argument("--challenger-id", type=int, required=True)

    return parser.parse_args(argv)


def _load_store(state_path: Path) -> InMemoryStore:
    if not state_path.exists():
        print(f"  State file {state_path} not found; starting from an empty store")
        return InMemoryStore()
    return load_snapshot(str(state_path))


def _save_evaluated_records(store: InMemoryStore, endpoint_id: int, output_dir: Path) -> Path | None:
    """Export the endpoint's evaluated records to CSV."""
    rows = [
        {
            "record_id": r.id,
            "endpoint_id": r.endpoint_id,
            "status": r.status.value,
            "correct": (r.actual or {}).get("correct"),
            "summary": (r.actual or {}).get("summary", ""),
            "batch_id": r.batch_id,
            "created_at": r.created_at.isoformat(),
            "updated_at": r.updated_at.isoformat(),
        }
        for r in store.list_records(endpoint_id)
        if r.processed
    ]
    if not rows:
        return None
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"evaluated_{endpoint_id}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    pd.DataFrame(rows).to_csv(path, index=False)
    return path


def _check_judges(roles: dict, skip: bool) -> None:
    if skip:
        return
    ok, _ = run_health_check(roles)
    if not ok:
        raise PromptLoopError("Judge health check failed; aborting")


def cmd_evaluate(args, store, config: LoopConfig, events: EventQueue) -> None:
    use_batch = config.batch.enabled if args.batch is None else args.batch
    _check_judges({"judge": config.judge}, args.skip_health_check)

    judge = create_judge_client(config.judge)
    batch_judge = create_batch_judge_client(config.judge) if use_batch else None
    executor = EvaluationExecutor(store, judge, config=config, events=events, batch_judge=batch_judge)

    print(f"=== Evaluation cycle: endpoint {args.endpoint_id} ({'batch' if use_batch else 'sync'}) ===\n")
    reports = executor.run_evaluation_cycle(args.endpoint_id, batch=use_batch)
    for report in reports:
        if report.batch_id:
            print(f"  Evaluator {report.evaluator_id}: submitted {report.sampled} records as batch {report.batch_id}")
        else:
            print(
                f"  Evaluator {report.evaluator_id}: sampled={report.sampled} "
                f"processed={report.processed} failed={report.failed} "
                f"side_effect_failures={report.side_effect_failures}"
            )
    print()

    csv_path = _save_evaluated_records(store, args.endpoint_id, Path(args.output_dir))
    if csv_path:
        print(f"  Evaluated records: {csv_path}\n")


def cmd_check_batches(args, store, config: LoopConfig, events: EventQueue) -> None:
    batch_judge = create_batch_judge_client(config.judge)
    reconciler = BatchReconciler(store, batch_judge, config=config, events=events)

    print("=== Batch sweep ===\n")
    summary = reconciler.check_all_pending_batches()
    print(f"  Batches:   {summary.total_batches} (completed {summary.completed_batches}, pending {summary.pending_batches})")
    print(f"  Entries:   {summary.processed_entries}/{summary.total_entries} processed")
    print()


def _insight_generator(store, config: LoopConfig, events: EventQueue, optimizer_settings) -> InsightGenerator:
    return InsightGenerator(store, create_judge_client(optimizer_settings), config=config.insights, events=events)


def cmd_insights(args, store, config: LoopConfig, events: EventQueue) -> None:
    optimizer_settings = load_judge_settings("OPTIMIZER")
    _check_judges({"optimizer": optimizer_settings}, args.skip_health_check)
    generator = _insight_generator(store, config, events, optimizer_settings)

    print(f"=== Insights: endpoint {args.endpoint_id} ===\n")
    insights = generator.generate_insights(args.endpoint_id, limit=args.limit)
    for insight in insights:
        print(f"  [{insight.version_tag}] {insight.problem}")
        print(f"    -> {insight.solution}")
    print(f"\n  Created {len(insights)} insights\n")


def _optimizer(store, config: LoopConfig, events: EventQueue, optimizer_settings) -> PromptOptimizer:
    return PromptOptimizer(
        store,
        create_judge_client(optimizer_settings),
        config=config.optimizer,
        insight_generator=_insight_generator(store, config, events, optimizer_settings),
        events=events,
    )


def cmd_optimize(args, store, config: LoopConfig, events: EventQueue) -> None:
    optimizer_settings = load_judge_settings("OPTIMIZER")
    _check_judges({"optimizer": optimizer_settings}, args.skip_health_check)
    optimizer = _optimizer(store, config, events, optimizer_settings)

    if args.command == "optimize":
        print(f"=== Optimize: endpoint {args.endpoint_id} ===\n")
        version = optimizer.optimize_endpoint(args.endpoint_id)
    else:
        print(f"=== Optimize from error: record {args.record_id} ===\n")
        version = optimizer.optimize_from_error(args.record_id)
    print(f"  Challenger endpoint {version.endpoint_id}: new version {version.version} (inactive)")
    print()


def cmd_release(args, store, config: LoopConfig, events: EventQueue) -> None:
    optimizer = PromptOptimizer(store, judge=None, config=config.optimizer, events=events)
    released = optimizer.release_prompt_version(args.endpoint_id, args.version, args.original_endpoint_id)
    print(f"=== Released endpoint {released.endpoint_id} version {released.version} ===\n")


def cmd_ab_test(args, store, config: LoopConfig, events: EventQueue) -> None:
    target_settings = load_judge_settings("OPTIMIZER")
    _check_judges({"judge": config.judge, "target": target_settings}, args.skip_health_check)
    evaluation = EvaluationExecutor(store, create_judge_client(config.judge), config=config, events=events)
    executor = ABComparisonExecutor(
        store,
        create_judge_client(target_settings),
        evaluation=evaluation,
        config=config.ab_test,
        max_concurrency=config.evaluation.max_concurrency,
    )

    print(f"=== A/B replay: endpoint {args.endpoint_id} ===\n")
    for report in executor.run_ab_comparison(args.endpoint_id):
        print(
            f"  Challenger {report.challenger_endpoint_id}: replayed={report.replayed} "
            f"evaluated={report.evaluated} failed={report.failed}"
        )
    print()


def cmd_ab_report(args, store, config: LoopConfig, events: EventQueue) -> None:
    comparison = compare_ab_results(store, args.endpoint_id, args.challenger_id)
    summary = comparison.summary()

    print(f"=== A/B report: {args.endpoint_id} vs {args.challenger_id} ===\n")
    print(f"  Pairs: {summary['pairs']}")
    if summary["pairs"]:
        print(f"  {'Endpoint':<12} {'correct_rate':>13}")
        print(f"  {'-'*12} {'-'*13}")
        print(f"  {'base':<12} {summary['base_correct_rate']:>13.3f}")
        print(f"  {'challenger':<12} {summary['challenger_correct_rate']:>13.3f}")
        print(f"  {'delta':<12} {summary['delta']:>+13.3f}")

        output_dir = Path(args.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / f"ab_pairs_{args.endpoint_id}_{args.challenger_id}.csv"
        comparison.pairs.to_csv(path, index=False)
        print(f"\n  Pairs: {path}")
    print()


HANDLERS = {
    "evaluate": cmd_evaluate,
    "check-batches": cmd_check_batches,
    "insights": cmd_insights,
    "optimize": cmd_optimize,
    "optimize-from-error": cmd_optimize,
    "release": cmd_release,
    "ab-test": cmd_ab_test,
    "ab-report": cmd_ab_report,
}


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = parse_args(argv)
    config = load_config()
    state_path = Path(args.state)

    try:
        store = _load_store(state_path)
        events = build_event_queue(InMemoryMetricsCache())
        HANDLERS[args.command](args, store, config, events)
    except (PromptLoopError, ValueError) as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(json.dumps({"error": str(e), "type": type(e).__name__}))
        return 1

    save_snapshot(store, str(state_path))
    logger.debug("Config: %s", json.dumps(config.to_dict()))
    print(f"  State saved: {state_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
