"""
Insight Generation

Asks a reviewer judge why an incorrect record went wrong and stores each
finding as an Insight for the prompt optimizer.
"""

from __future__ import annotations

import logging
import random
from typing import Sequence

from prompt_loop_core.domain.entities import ExecutionRecord, Insight, MonitoredEndpoint
from prompt_loop_core.domain.errors import NotFoundError
from prompt_loop_core.infrastructure.events import EventQueue, InsightsCreated
from prompt_loop_core.infrastructure.judge_clients.base import JudgeClient
from prompt_loop_core.loop_config import InsightConfig
from prompt_loop_core.ports import LoopStore
from prompt_loop_core.prompt_builder import build_review_request
from prompt_loop_core.scoring.correctness import is_correct
from prompt_loop_core.scoring.judgment_parser import parse_reviews

logger = logging.getLogger(__name__)


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)].rstrip() + "..."


def current_version(store: LoopStore, endpoint_id: int) -> str:
    """Active prompt version of an endpoint (the latest one when none is active, "0" when none exists)"""
    versions = store.list_versions(endpoint_id)
    for version in versions:
        if version.active_version:
            return version.version
    return versions[-1].version if versions else "0"


class InsightGenerator:
    """
    Derives root-cause insights from incorrect execution records

    Args:
        store: Repository for endpoints, records and insights
        judge: Client answering the review request
        config: Insight configuration
        reviewer: Endpoint whose prompt is used as the reviewer system prompt
        events: Post-commit event queue
        rng: Random generator used for attachment order
    """

    def __init__(
        self,
        store: LoopStore,
        judge: JudgeClient,
        config: InsightConfig | None = None,
        reviewer: MonitoredEndpoint | None = None,
        events: EventQueue | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.judge = judge
        self.config = config or InsightConfig()
        self.reviewer = reviewer
        self.events = events if events is not None else EventQueue()
        self.rng = rng or random.Random()

    def review_record(
        self,
        record: ExecutionRecord,
        endpoint: MonitoredEndpoint,
        prior_insights: Sequence[Insight] = (),
    ) -> list[dict[str, str]]:
        """
        Ask the reviewer for the root causes of one incorrect record

        No retry: a provider failure propagates to the caller.

        Returns:
            Findings as {problem, solution, description}, clipped to the configured lengths

        Raises:
            ProviderError: When the judge call fails
            ParseError: When the answer is not a list of reviews
        """
        request = build_review_request(
            record,
            endpoint.prompt,
            prior_insights=prior_insights,
            reviewer_prompt=self.reviewer.prompt if self.reviewer is not None else None,
            max_attachments=self.config.max_attachments,
            max_problem_chars=self.config.max_problem_chars,
            max_solution_chars=self.config.max_solution_chars,
            max_description_chars=self.config.max_description_chars,
            rng=self.rng,
        )
        response = self.judge.complete(request)
        return [
            {
                "problem": _clip(review["problem"], self.config.max_problem_chars),
                "solution": _clip(review["solution"], self.config.max_solution_chars),
                "description": _clip(review["description"], self.config.max_description_chars),
            }
            for review in parse_reviews(response.text)
        ]

    def run_review(
        self,
        record: ExecutionRecord,
        endpoint: MonitoredEndpoint,
        prior_insights: Sequence[Insight] = (),
    ) -> list[Insight]:
        """Review one record and persist each finding tagged with the endpoint id and prompt version"""
        findings = self.review_record(record, endpoint, prior_insights)
        if not findings:
            return []
        version_tag = f"{endpoint.id}-{current_version(self.store, endpoint.id)}"
        snapshot = {
            "record_id": record.id,
            "input": record.input,
            "output": record.output,
            "actual": record.actual,
        }
        insights = [
            Insight(
                endpoint_id=endpoint.id,
                problem=finding["problem"],
                solution=finding["solution"],
                description=finding["description"],
                version_tag=version_tag,
                record_snapshot=snapshot,
            )
            for finding in findings
        ]
        stored = list(self.store.add_insights(insights))
        self.events.publish(InsightsCreated(endpoint_id=endpoint.id, count=len(stored)))
        logger.info("Record %s: stored %d insights (%s)", record.id, len(stored), version_tag)
        return stored

    def review_record_by_id(self, record_id: int) -> list[Insight]:
        """
        Review one record by id against its endpoint

        Raises:
            NotFoundError: When the record or its endpoint does not exist
        """
        record = self.store.get_record(record_id)
        if record is None:
            raise NotFoundError("ExecutionRecord", record_id)
        endpoint = self.store.get_endpoint(record.endpoint_id)
        if endpoint is None:
            raise NotFoundError("Endpoint", record.endpoint_id)
        prior = self.store.list_insights(endpoint.id)
        insights = self.run_review(record, endpoint, prior)
        for failure in self.events.drain():
            logger.warning("Side effect %s failed: %s", failure.handler, failure.error)
        return insights

    def generate_insights(self, endpoint_id: int, limit: int | None = None) -> list[Insight]:
        """
        Review incorrect processed records until the endpoint holds enough insights

        Reviewing pauses once the endpoint has max_insights_before_pause
        insights. A record whose review fails is logged and skipped.

        Raises:
            NotFoundError: When the endpoint does not exist
        """
        endpoint = self.store.get_endpoint(endpoint_id)
        if endpoint is None:
            raise NotFoundError("Endpoint", endpoint_id)

        reviewed = {
            insight.record_snapshot.get("record_id")
            for insight in self.store.list_insights(endpoint_id)
        }
        candidates = [
            record for record in self.store.list_records(endpoint_id)
            if record.processed
            and record.id not in reviewed
            and not is_correct(record.actual, record.status)
        ]
        if limit is not None:
            candidates = candidates[:limit]

        created: list[Insight] = []
        for record in candidates:
            prior = self.store.list_insights(endpoint_id)
            if len(prior) >= self.config.max_insights_before_pause:
                logger.info(
                    "Endpoint %s holds %d insights; pausing reviews",
                    endpoint_id, len(prior),
                )
                break
            try:
                created.extend(self.run_review(record, endpoint, prior))
            except Exception:
                logger.exception("Review of record %s failed", record.id)

        for failure in self.events.drain():
            logger.warning("Side effect %s failed: %s", failure.handler, failure.error)
        return created
