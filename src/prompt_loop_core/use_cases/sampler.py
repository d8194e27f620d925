"""
Activation Controller

Decides, per evaluator, whether an evaluation cycle runs and which backlog
records it evaluates.
"""

from __future__ import annotations

import logging
import math
import random
import uuid
from datetime import datetime, timedelta

from prompt_loop_core.domain.entities import ActivationPolicy, ExecutionRecord, utcnow
from prompt_loop_core.domain.errors import PolicyNotMetError
from prompt_loop_core.loop_config import EvaluationConfig
from prompt_loop_core.ports import ExecutionRecordRepository

logger = logging.getLogger(__name__)


def compute_sample_size(backlog_count: int, policy: ActivationPolicy) -> int:
    """
    Number of records to evaluate this cycle

    Raises:
        PolicyNotMetError: When the backlog is below the policy's threshold
    """
    if backlog_count < policy.backlog_threshold:
        raise PolicyNotMetError(backlog_count, policy.backlog_threshold)
    return min(math.floor(backlog_count * policy.sampling_percentage / 100.0), policy.per_cycle_limit)


def select_records(
    backlog: list[ExecutionRecord],
    policy: ActivationPolicy,
    rng: random.Random | None = None,
) -> list[ExecutionRecord]:
    """
    Randomly draw the cycle's sample, without replacement

    Raises:
        PolicyNotMetError: When the backlog is below the policy's threshold
    """
    size = min(compute_sample_size(len(backlog), policy), len(backlog))
    if size <= 0:
        return []
    return (rng or random).sample(backlog, size)


class ActivationController:
    """Samples and claims backlog records for one evaluation cycle"""

    def __init__(
        self,
        records: ExecutionRecordRepository,
        config: EvaluationConfig | None = None,
        owner: str | None = None,
        rng: random.Random | None = None,
    ):
        self.records = records
        self.config = config or EvaluationConfig()
        self.owner = owner or f"cycle-{uuid.uuid4().hex[:12]}"
        self.rng = rng or random.Random()

    def backlog(self, endpoint_id: int, now: datetime | None = None) -> list[ExecutionRecord]:
        """Unevaluated production records inside the lookback window"""
        now = now or utcnow()
        since = now - timedelta(days=self.config.lookback_days)
        return list(self.records.list_backlog(endpoint_id, since))

    def sample(
        self,
        endpoint_id: int,
        policy: ActivationPolicy,
        now: datetime | None = None,
    ) -> list[ExecutionRecord]:
        """
        Sample and claim records for this cycle

        An under-threshold backlog is a normal outcome and yields an empty
        list. Records claimed by a concurrent cycle are left out.

        Args:
            endpoint_id: Monitored endpoint whose backlog is sampled
            policy: The evaluator's activation policy
            now: Reference time (default: current UTC time)

        Returns:
            The claimed records
        """
        now = now or utcnow()
        backlog = [r for r in self.backlog(endpoint_id, now) if r.is_claimable(now)]
        try:
            selected = select_records(backlog, policy, self.rng)
        except PolicyNotMetError as e:
            logger.info("Endpoint %s: %s; skipping cycle", endpoint_id, e)
            return []

        lease_until = now + timedelta(seconds=self.config.claim_lease_seconds)
        claimed = []
        for record in selected:
            if self.records.claim_record(record.id, self.owner, lease_until, now):
                claimed.append(record)
            else:
                logger.debug("Record %s already claimed by another cycle", record.id)
        logger.info(
            "Endpoint %s: backlog=%d, sampled=%d, claimed=%d",
            endpoint_id, len(backlog), len(selected), len(claimed),
        )
        return claimed

    def release(self, record: ExecutionRecord) -> None:
        self.records.release_claim(record.id, self.owner)
