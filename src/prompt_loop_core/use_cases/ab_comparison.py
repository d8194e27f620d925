"""
A/B Comparison

Replays historical base-endpoint records through each challenger prompt,
evaluates the challenger outputs, and compares the paired verdicts.
"""

from __future__ import annotations

import logging
import random
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import pandas as pd

from prompt_loop_core.domain.entities import ExecutionRecord, MonitoredEndpoint
from prompt_loop_core.domain.errors import NotFoundError
from prompt_loop_core.infrastructure.judge_clients.base import JudgeClient
from prompt_loop_core.loop_config import ABConfig
from prompt_loop_core.ports import LoopStore
from prompt_loop_core.prompt_builder import build_replay_request
from prompt_loop_core.scoring.correctness import is_correct
from prompt_loop_core.use_cases.evaluation import EvaluationExecutor
from prompt_loop_core.use_cases.prompt_optimizer import active_prompt

logger = logging.getLogger(__name__)

PAIR_COLUMNS = [
    "base_record_id",
    "challenger_record_id",
    "base_correct",
    "challenger_correct",
    "created_at",
]


@dataclass
class ABRunReport:
    """Outcome of replaying records through one challenger"""
    base_endpoint_id: int
    challenger_endpoint_id: int
    replayed: int = 0
    evaluated: int = 0
    failed: int = 0


@dataclass
class ABComparison:
    """Paired verdicts of a base endpoint and one challenger"""
    base_endpoint_id: int
    challenger_endpoint_id: int
    pairs: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=PAIR_COLUMNS))

    @property
    def pair_count(self) -> int:
        return len(self.pairs)

    @property
    def base_correct_rate(self) -> float | None:
        if self.pairs.empty:
            return None
        return float(self.pairs["base_correct"].mean())

    @property
    def challenger_correct_rate(self) -> float | None:
        if self.pairs.empty:
            return None
        return float(self.pairs["challenger_correct"].mean())

    def summary(self) -> dict:
        base_rate = self.base_correct_rate
        challenger_rate = self.challenger_correct_rate
        delta = None
        if base_rate is not None and challenger_rate is not None:
            delta = challenger_rate - base_rate
        return {
            "base_endpoint_id": self.base_endpoint_id,
            "challenger_endpoint_id": self.challenger_endpoint_id,
            "pairs": self.pair_count,
            "base_correct_rate": base_rate,
            "challenger_correct_rate": challenger_rate,
            "delta": delta,
        }


class ABComparisonExecutor:
    """
    Runs challenger replays for a base endpoint

    Args:
        store: Repository for endpoints, records and challengers
        target: Client that generates the challenger outputs
        evaluation: Executor judging replayed records (None: replay only)
        config: A/B configuration
        max_concurrency: Parallel replays per challenger
        rng: Random generator used to pick the replayed records
    """

    def __init__(
        self,
        store: LoopStore,
        target: JudgeClient,
        evaluation: EvaluationExecutor | None = None,
        config: ABConfig | None = None,
        max_concurrency: int = 8,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.target = target
        self.evaluation = evaluation
        self.config = config or ABConfig()
        self.max_concurrency = max_concurrency
        self.rng = rng or random.Random()

    def _evaluator_for(self, challenger: MonitoredEndpoint) -> MonitoredEndpoint | None:
        for assignment in self.store.list_evaluator_assignments(challenger.id):
            evaluator = self.store.get_endpoint(assignment.evaluator_id)
            if evaluator is not None:
                return evaluator
        return None

    def replay_record(self, record: ExecutionRecord, challenger: MonitoredEndpoint, prompt: str) -> ExecutionRecord:
        """
        Generate the challenger output for one base record and store it

        Raises:
            ProviderError: When the target call fails
        """
        request = build_replay_request(prompt, record)
        response = self.target.complete(request)
        return self.store.add_record(
            ExecutionRecord(
                endpoint_id=challenger.id,
                input=request.messages,
                output={
                    "choices": [{"message": {"content": response.text}}],
                    "usage": {
                        "prompt_tokens": response.input_tokens,
                        "completion_tokens": response.output_tokens,
                    },
                },
                origin_record_id=record.id,
                environment=record.environment,
            )
        )

    def _replay_and_evaluate(
        self,
        record: ExecutionRecord,
        challenger: MonitoredEndpoint,
        prompt: str,
        evaluator: MonitoredEndpoint | None,
    ) -> bool:
        replayed = self.replay_record(record, challenger, prompt)
        if evaluator is None or self.evaluation is None:
            return False
        return self.evaluation.single_evaluate(replayed, evaluator).processed

    def run_challenger(self, base: MonitoredEndpoint, challenger: MonitoredEndpoint) -> ABRunReport:
        """Replay up to sample_limit unpaired base records through one challenger"""
        report = ABRunReport(base_endpoint_id=base.id, challenger_endpoint_id=challenger.id)
        unpaired = list(self.store.list_unpaired_records(base.id, challenger.id))
        records = self.rng.sample(unpaired, min(self.config.sample_limit, len(unpaired)))
        if not records:
            logger.info("Challenger %s: no unpaired records of endpoint %s", challenger.id, base.id)
            return report

        prompt = active_prompt(self.store, challenger)
        evaluator = self._evaluator_for(challenger)
        if evaluator is None:
            logger.warning("Challenger %s has no evaluator; replaying without evaluation", challenger.id)

        workers = max(1, min(self.max_concurrency, len(records)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._replay_and_evaluate, record, challenger, prompt, evaluator): record
                for record in records
            }
            for future in as_completed(futures):
                record = futures[future]
                try:
                    evaluated = future.result()
                except Exception:
                    logger.exception("Replay of record %s through challenger %s failed", record.id, challenger.id)
                    report.failed += 1
                    continue
                report.replayed += 1
                if evaluated:
                    report.evaluated += 1

        if self.evaluation is not None:
            for failure in self.evaluation.events.drain():
                logger.warning("Side effect %s failed: %s", failure.handler, failure.error)
        logger.info(
            "Challenger %s: replayed=%d, evaluated=%d, failed=%d",
            challenger.id, report.replayed, report.evaluated, report.failed,
        )
        return report

    def run_ab_comparison(self, base_endpoint_id: int) -> list[ABRunReport]:
        """
        Replay history through every challenger of a base endpoint

        Raises:
            NotFoundError: When the base endpoint or a challenger does not exist
        """
        base = self.store.get_endpoint(base_endpoint_id)
        if base is None:
            raise NotFoundError("Endpoint", base_endpoint_id)

        reports = []
        for assignment in self.store.list_challengers(base_endpoint_id):
            challenger = self.store.get_endpoint(assignment.challenger_endpoint_id)
            if challenger is None:
                raise NotFoundError("Challenger endpoint", assignment.challenger_endpoint_id)
            reports.append(self.run_challenger(base, challenger))
        return reports


def compare_ab_results(store: LoopStore, base_endpoint_id: int, challenger_endpoint_id: int) -> ABComparison:
    """
    Pair every evaluated challenger record with its evaluated base record

    Pairs where either side has no verdict yet are left out.
    """
    base_records = {
        record.id: record
        for record in store.list_records(base_endpoint_id)
        if record.processed
    }
    rows = []
    for record in store.list_records(challenger_endpoint_id):
        origin = base_records.get(record.origin_record_id)
        if origin is None or not record.processed:
            continue
        rows.append({
            "base_record_id": origin.id,
            "challenger_record_id": record.id,
            "base_correct": is_correct(origin.actual, origin.status),
            "challenger_correct": is_correct(record.actual, record.status),
            "created_at": record.created_at,
        })

    pairs = pd.DataFrame(rows, columns=PAIR_COLUMNS)
    return ABComparison(
        base_endpoint_id=base_endpoint_id,
        challenger_endpoint_id=challenger_endpoint_id,
        pairs=pairs,
    )
