"""
Snapshot files

Loads and saves the whole in-memory store as one JSON document so that the
CLI can run a loop step against a state file.

Layout:
    {
      "endpoints": [...], "evaluator_assignments": [...], "metrics": [...],
      "records": [...], "prompt_versions": [...], "deploy_history": [...],
      "insights": [...], "challengers": [...], "batch_jobs": [...]
    }
Every section is optional; datetimes are ISO 8601 strings (naive values are
read as UTC).
"""

import json
from dataclasses import asdict, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from prompt_loop_core.domain.entities import (
    ActivationPolicy,
    BatchJob,
    ChallengerAssignment,
    DeployHistoryEntry,
    EvaluatorAssignment,
    ExecutionRecord,
    Insight,
    MetricDefinition,
    MonitoredEndpoint,
    PromptVersion,
)
from prompt_loop_core.infrastructure.memory_store import InMemoryStore


def _parse_datetime(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _build(cls: type, data: dict) -> Any:
    """
    Create an entity from dictionary data

    Unknown keys are rejected; missing optional keys take their defaults.
    """
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise KeyError(f"Unknown field(s) for {cls.__name__}: {sorted(unknown)}")
    kwargs = {
        key: _parse_datetime(value) if key.endswith("_at") else value
        for key, value in data.items()
    }
    return cls(**kwargs)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def load_snapshot(file_path: str) -> InMemoryStore:
    """
    Load a snapshot JSON into a new store

    Args:
        file_path: Path to the snapshot JSON file

    Returns:
        InMemoryStore: Store holding every entity of the snapshot

    Raises:
        FileNotFoundError: If the file does not exist
        KeyError: If an entity has an unknown field
    """
    with open(file_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    store = InMemoryStore()
    for endpoint in data.get("endpoints", []):
        store.add_endpoint(_build(MonitoredEndpoint, endpoint))
    for metric in data.get("metrics", []):
        store.add_metric(_build(MetricDefinition, metric))
    for assignment in data.get("evaluator_assignments", []):
        store.add_evaluator_assignment(
            EvaluatorAssignment(
                endpoint_id=assignment["endpoint_id"],
                evaluator_id=assignment["evaluator_id"],
                policy=ActivationPolicy(**assignment.get("policy", {})),
            )
        )
    for record in data.get("records", []):
        store.add_record(_build(ExecutionRecord, record))
    for version in data.get("prompt_versions", []):
        version = dict(version)
        version["version"] = str(version["version"])
        store.add_version(_build(PromptVersion, version))
    for entry in data.get("deploy_history", []):
        store.add_deploy_history(_build(DeployHistoryEntry, entry))
    for insight in data.get("insights", []):
        store.add_insights([_build(Insight, insight)])
    for challenger in data.get("challengers", []):
        store.add_challenger(_build(ChallengerAssignment, challenger))
    for job in data.get("batch_jobs", []):
        store.add_batch_job(_build(BatchJob, job))
    return store


def snapshot_to_dict(store: InMemoryStore) -> dict[str, Any]:
    """Convert a store into the snapshot layout (entities as plain dicts)"""
    return {
        "endpoints": [asdict(e) for e in store.endpoints.values()],
        "evaluator_assignments": [asdict(a) for a in store.assignments],
        "metrics": [asdict(m) for m in store.metrics.values()],
        "records": [asdict(r) for r in store.records.values()],
        "prompt_versions": [asdict(v) for v in store.versions.values()],
        "deploy_history": [asdict(e) for e in store.deploy_history],
        "insights": [asdict(i) for i in store.insights.values()],
        "challengers": [asdict(c) for c in store.challengers.values()],
        "batch_jobs": [asdict(j) for j in store.batch_jobs.values()],
    }


def save_snapshot(store: InMemoryStore, file_path: str) -> None:
    """
    Write the store to a snapshot JSON file

    The file is written next to its final path and then moved into place.
    """
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(snapshot_to_dict(store), f, ensure_ascii=False, indent=2, default=_encode)
    tmp_path.replace(path)
