"""
Prompt Optimization

Rewrites an endpoint's prompt from its accumulated insights and manages the
resulting prompt versions: either appended to the principal challenger or
installed on a freshly cloned challenger endpoint.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Sequence

from prompt_loop_core.domain.entities import (
    ChallengerAssignment,
    DeployHistoryEntry,
    EvaluatorAssignment,
    Insight,
    MonitoredEndpoint,
    PromptVersion,
    utcnow,
)
from prompt_loop_core.domain.errors import NotFoundError, ParseError, StateConflictError
from prompt_loop_core.infrastructure.events import EventQueue, PromptReleased
from prompt_loop_core.infrastructure.judge_clients.base import JudgeClient
from prompt_loop_core.loop_config import OptimizerConfig
from prompt_loop_core.ports import LoopStore
from prompt_loop_core.prompt_builder import build_enhancement_request
from prompt_loop_core.scoring.correctness import is_correct
from prompt_loop_core.scoring.judgment_parser import strip_code_fences
from prompt_loop_core.use_cases.insights import InsightGenerator

logger = logging.getLogger(__name__)


def active_prompt(store: LoopStore, endpoint: MonitoredEndpoint) -> str:
    """Prompt of the endpoint's active version, falling back to its parameters"""
    for version in store.list_versions(endpoint.id):
        if version.active_version:
            return version.prompt
    return endpoint.prompt


def next_version_number(versions: Sequence[PromptVersion]) -> str:
    """Last numeric version + 1; the count + 1 when the last one is not numeric"""
    if not versions:
        return "1"
    last = versions[-1].version
    try:
        return str(int(last) + 1)
    except ValueError:
        return str(len(versions) + 1)


class PromptOptimizer:
    """
    Turns insights into new prompt versions

    Args:
        store: Repository for endpoints, versions, insights and challengers
        judge: Client used for prompt rewriting (the optimization model)
        config: Optimizer configuration
        insight_generator: Used by optimize_from_error to review the record first
        events: Post-commit event queue
    """

    def __init__(
        self,
        store: LoopStore,
        judge: JudgeClient,
        config: OptimizerConfig | None = None,
        insight_generator: InsightGenerator | None = None,
        events: EventQueue | None = None,
    ):
        self.store = store
        self.judge = judge
        self.config = config or OptimizerConfig()
        self.events = events if events is not None else EventQueue()
        self.insight_generator = insight_generator

    def enhance_prompt(self, original_prompt: str, insights: Sequence[Insight]) -> str:
        """
        Ask the optimization model for a rewritten prompt

        Raises:
            ProviderError: When the judge call fails
            ParseError: When the model returns an empty prompt
        """
        response = self.judge.complete(build_enhancement_request(original_prompt, insights))
        prompt = strip_code_fences(response.text)
        if not prompt:
            raise ParseError("Prompt enhancement returned an empty prompt")
        return prompt

    def _require_endpoint(self, endpoint_id: int) -> MonitoredEndpoint:
        endpoint = self.store.get_endpoint(endpoint_id)
        if endpoint is None:
            raise NotFoundError("Endpoint", endpoint_id)
        return endpoint

    def current_prompt(self, endpoint_id: int) -> str:
        return active_prompt(self.store, self._require_endpoint(endpoint_id))

    def create_prompt_version(self, endpoint_id: int, prompt: str, active: bool = False) -> PromptVersion:
        self._require_endpoint(endpoint_id)
        version = PromptVersion(
            endpoint_id=endpoint_id,
            version=next_version_number(self.store.list_versions(endpoint_id)),
            prompt=prompt,
            active_version=active,
        )
        return self.store.add_version(version)

    def clone_as_challenger(self, endpoint: MonitoredEndpoint, prompt: str) -> MonitoredEndpoint:
        """
        Copy an endpoint into a new optimized challenger

        Metrics are copied with new ids and the evaluator links are carried
        over; the clone becomes the principal challenger of the original.
        """
        now = utcnow()
        clone = replace(
            endpoint,
            id=None,
            slug=f"{endpoint.slug}-optimized-{int(time.time() * 1000)}",
            is_optimized=True,
            parameters={**endpoint.parameters, "prompt": prompt},
            flags=dict(endpoint.flags),
            created_at=now,
            updated_at=now,
        )
        clone = self.store.add_endpoint(clone)

        for metric in self.store.list_metrics(endpoint.id):
            self.store.add_metric(replace(metric, id=None, endpoint_id=clone.id, created_at=now))
        for assignment in self.store.list_evaluator_assignments(endpoint.id):
            self.store.add_evaluator_assignment(
                EvaluatorAssignment(
                    endpoint_id=clone.id,
                    evaluator_id=assignment.evaluator_id,
                    policy=replace(assignment.policy),
                )
            )
        self.store.add_challenger(
            ChallengerAssignment(
                base_endpoint_id=endpoint.id,
                challenger_endpoint_id=clone.id,
                percentage=self.config.challenger_percentage,
                principal=True,
            )
        )
        logger.info("Endpoint %s: created challenger %s (%s)", endpoint.id, clone.id, clone.slug)
        return clone

    def optimize_endpoint(self, endpoint_id: int) -> PromptVersion:
        """
        Rewrite an endpoint's prompt from its most recent insights

        The new prompt becomes an inactive version of the principal
        challenger, which is created first when the endpoint has none.

        Raises:
            NotFoundError: When the endpoint does not exist
            StateConflictError: When the endpoint has no insights
        """
        endpoint = self._require_endpoint(endpoint_id)
        insights = list(self.store.list_insights(endpoint_id, limit=self.config.insight_limit))
        if not insights:
            raise StateConflictError(f"Endpoint {endpoint_id} has no insights to optimize from")

        prompt = self.enhance_prompt(self.current_prompt(endpoint_id), insights)

        assignment = self.store.get_principal_challenger(endpoint_id)
        if assignment is not None:
            challenger_id = assignment.challenger_endpoint_id
        else:
            challenger_id = self.clone_as_challenger(endpoint, prompt).id

        version = self.create_prompt_version(challenger_id, prompt)
        logger.info(
            "Endpoint %s: optimized prompt from %d insights -> challenger %s version %s",
            endpoint_id, len(insights), challenger_id, version.version,
        )
        return version

    def optimize_from_error(self, record_id: int) -> PromptVersion:
        """
        Review one incorrect record, then optimize its endpoint

        Raises:
            NotFoundError: When the record does not exist
            StateConflictError: When the record is correct
        """
        if self.insight_generator is None:
            raise ValueError("optimize_from_error requires an InsightGenerator")
        record = self.store.get_record(record_id)
        if record is None:
            raise NotFoundError("ExecutionRecord", record_id)
        if is_correct(record.actual, record.status):
            raise StateConflictError(f"Record {record_id} does not contain an error")

        self.insight_generator.review_record_by_id(record_id)
        return self.optimize_endpoint(record.endpoint_id)

    def release_prompt_version(
        self,
        endpoint_id: int,
        version: str,
        original_endpoint_id: int | None = None,
    ) -> PromptVersion:
        """
        Make one version the only active prompt

        Versions of the endpoint, of its base endpoint and of every challenger
        of that base are deactivated before the target is activated. When
        original_endpoint_id is omitted the base is resolved from the
        endpoint's challenger assignment.

        Raises:
            NotFoundError: When the version does not exist
        """
        version = str(version)
        if not any(v.version == version for v in self.store.list_versions(endpoint_id)):
            raise NotFoundError(f"Prompt version {version} of endpoint", endpoint_id)
        if original_endpoint_id is None:
            assignment = self.store.get_challenger_assignment(endpoint_id)
            original_endpoint_id = assignment.base_endpoint_id if assignment is not None else endpoint_id

        self.store.deactivate_versions(endpoint_id)
        if original_endpoint_id != endpoint_id:
            self.store.deactivate_versions(original_endpoint_id)
        for challenger in self.store.list_challengers(original_endpoint_id):
            if challenger.challenger_endpoint_id != endpoint_id:
                self.store.deactivate_versions(challenger.challenger_endpoint_id)

        released = self.store.activate_version(endpoint_id, version)
        self.store.add_deploy_history(DeployHistoryEntry(endpoint_id=original_endpoint_id, version=version))
        self.events.publish(PromptReleased(endpoint_id=endpoint_id, version=version))
        for failure in self.events.drain():
            logger.warning("Side effect %s failed: %s", failure.handler, failure.error)
        logger.info("Endpoint %s: released version %s", endpoint_id, version)
        return released

    def list_prompt_versions(self, endpoint_id: int) -> list[dict]:
        """
        Versions of the endpoint and its principal challenger, oldest first

        Each entry is renumbered "1", "2", ... by creation time; the stored
        number is kept as original_version.
        """
        versions = list(self.store.list_versions(endpoint_id))
        principal = self.store.get_principal_challenger(endpoint_id)
        if principal is not None:
            versions.extend(self.store.list_versions(principal.challenger_endpoint_id))
        versions.sort(key=lambda v: v.created_at)
        return [
            {
                "endpoint_id": v.endpoint_id,
                "version": str(index),
                "original_version": v.version,
                "prompt": v.prompt,
                "active_version": v.active_version,
                "created_at": v.created_at,
            }
            for index, v in enumerate(versions, start=1)
        ]
