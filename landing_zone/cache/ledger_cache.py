# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.
#
# This product includes software developed at Datadog (https://www.datadoghq.com/  Copyright 2025 Datadog, Inc.

# stdlib
from typing import Any, Final, Literal, NotRequired, TypeAlias, TypedDict

# project
from cache.common import deserialize_cache

LEDGER_CACHE_BLOB = "ledger.json"

PENDING: Final = "pending"
APPLYING: Final = "applying"
APPLIED: Final = "applied"
FAILED: Final = "failed"
SKIPPED: Final = "skipped"

NodeStatus = Literal["pending", "applying", "applied", "failed", "skipped"]

CREATED_OR_UPDATED: Final = "applied"
UNCHANGED: Final = "unchanged"

EnsureOutcome = Literal["applied", "unchanged"]


class LedgerRecord(TypedDict):
    node_id: str
    kind: str
    status: NodeStatus
    resource_id: NotRequired[str]
    error: NotRequired[str]
    outcome: NotRequired[EnsureOutcome]


LedgerCache: TypeAlias = list[LedgerRecord]
"""Per node outcome of a run, in plan order"""

LEDGER_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "node_id": {"type": "string"},
            "kind": {"type": "string"},
            "status": {"enum": [PENDING, APPLYING, APPLIED, FAILED, SKIPPED]},
            "resource_id": {"type": "string"},
            "error": {"type": "string"},
            "outcome": {"enum": [CREATED_OR_UPDATED, UNCHANGED]},
        },
        "required": ["node_id", "kind", "status"],
        "additionalProperties": False,
    },
}


def deserialize_ledger_cache(cache_str: str) -> LedgerCache | None:
    """Deserialize the ledger of a previous run. Returns None if the cache is invalid."""
    return deserialize_cache(cache_str, LEDGER_SCHEMA)


def ledger_drift(previous: LedgerCache, current: LedgerCache) -> dict[str, list[str]]:
    """Compare two runs' ledgers.

    Returns the node ids whose resource id changed (`changed`), the nodes that
    were failed or skipped last time and are now applied (`recovered`), and the
    nodes that were applied last time but no longer are (`regressed`)."""
    before = {record["node_id"]: record for record in previous}
    drift: dict[str, list[str]] = {"changed": [], "recovered": [], "regressed": []}
    for record in current:
        old = before.get(record["node_id"])
        if old is None:
            continue
        if old["status"] == APPLIED and record["status"] == APPLIED:
            if old.get("resource_id") != record.get("resource_id"):
                drift["changed"].append(record["node_id"])
        elif record["status"] == APPLIED and old["status"] in (FAILED, SKIPPED):
            drift["recovered"].append(record["node_id"])
        elif old["status"] == APPLIED and record["status"] != APPLIED:
            drift["regressed"].append(record["node_id"])
    return drift
