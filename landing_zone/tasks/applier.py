# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

"""Executes a plan against a CloudClient.

Batches run strictly in order, nodes of a batch run concurrently on at most
`max_workers` tasks. A node only starts once every dependency is applied: the
dependents of a failed node are skipped, independent branches carry on. Once
the cancellation event is set no new node starts, nodes already applying are
allowed to finish.
"""

# stdlib
from asyncio import Event, Lock, Semaphore, gather
from collections.abc import Mapping
from dataclasses import dataclass
from logging import getLogger
from typing import Any

# 3p
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter
from tenacity.wait import wait_base

# project
from cache.env import DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_CONCURRENCY
from cache.ledger_cache import (
    APPLIED,
    APPLYING,
    FAILED,
    PENDING,
    SKIPPED,
    EnsureOutcome,
    LedgerCache,
    LedgerRecord,
    NodeStatus,
)
from tasks.client.cloud_client import CloudClient, EnsureResult, get_ensure_operation
from tasks.common import subscription_id_of
from tasks.errors import LandingZoneError, PartialApply, TransientCloudError, UnresolvedReference
from tasks.graph import Ref, ResourceNode
from tasks.planner import Plan

log = getLogger(__name__)

MAX_WAIT_SECONDS = 30


@dataclass
class NodeResult:
    node: ResourceNode
    status: NodeStatus = PENDING
    resource_id: str | None = None
    error: str | None = None
    outcome: EnsureOutcome | None = None

    def to_record(self) -> LedgerRecord:
        record: LedgerRecord = {"node_id": self.node.id, "kind": self.node.kind.value, "status": self.status}
        if self.resource_id is not None:
            record["resource_id"] = self.resource_id
        if self.error is not None:
            record["error"] = self.error
        if self.outcome is not None:
            record["outcome"] = self.outcome
        return record


class Ledger:
    """Per run outcome of every planned node, in plan order. All updates go through a single lock."""

    def __init__(self, plan: Plan) -> None:
        self.results = {node.id: NodeResult(node) for node in plan.nodes()}
        self._lock = Lock()

    def __getitem__(self, node_id: str) -> NodeResult:
        return self.results[node_id]

    async def update(self, node_id: str, status: NodeStatus, **fields: Any) -> None:
        async with self._lock:
            result = self.results[node_id]
            result.status = status
            for name, value in fields.items():
                setattr(result, name, value)

    def node_ids_with_status(self, status: NodeStatus) -> list[str]:
        return [node_id for node_id, result in self.results.items() if result.status == status]

    def to_records(self) -> LedgerCache:
        return [result.to_record() for result in self.results.values()]

    def resolve(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Substitute every Ref in `payload` with the referenced node's applied value"""
        return {k: self.resolve_ref(v) if isinstance(v, Ref) else v for k, v in payload.items()}

    def resolve_ref(self, ref: Ref) -> str:
        result = self.results.get(ref.node_id)
        if result is None or result.status != APPLIED or not result.resource_id:
            raise UnresolvedReference(ref.node_id, ref.attribute)
        if ref.attribute == "subscription_id":
            return subscription_id_of(result.resource_id)
        return result.resource_id


class Applier:
    def __init__(
        self,
        client: CloudClient,
        max_workers: int = DEFAULT_MAX_CONCURRENCY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        wait: wait_base | None = None,
    ) -> None:
        self.client = client
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.wait = wait or wait_exponential_jitter(initial=1, max=MAX_WAIT_SECONDS)

    async def apply(self, plan: Plan, cancel: Event | None = None) -> Ledger:
        """Apply every batch of `plan`, raising PartialApply if any node failed or was skipped"""
        ledger = Ledger(plan)
        workers = Semaphore(self.max_workers)
        for i, batch in enumerate(plan):
            log.debug("Applying batch %s of %s (%s nodes)", i + 1, len(plan), len(batch))
            await gather(*(self.apply_node(node, ledger, workers, cancel) for node in batch))

        if ledger.node_ids_with_status(FAILED) or ledger.node_ids_with_status(SKIPPED):
            raise PartialApply(ledger)
        log.info("Applied %s nodes", len(ledger.node_ids_with_status(APPLIED)))
        return ledger

    async def apply_node(self, node: ResourceNode, ledger: Ledger, workers: Semaphore, cancel: Event | None) -> None:
        if blocked := sorted(d for d in node.dependencies if ledger[d].status != APPLIED):
            reason = f"dependency {blocked[0]} is {ledger[blocked[0]].status}"
            log.warning("Skipping %s: %s", node.id, reason)
            await ledger.update(node.id, SKIPPED, error=reason)
            return

        async with workers:
            if cancel is not None and cancel.is_set():
                log.warning("Skipping %s: run cancelled", node.id)
                await ledger.update(node.id, SKIPPED, error="run cancelled")
                return
            await ledger.update(node.id, APPLYING)
            log.info("Applying %s", node.id)
            try:
                result = await self.ensure(node, ledger.resolve(node.payload))
            except LandingZoneError as e:
                log.error("Failed to apply %s: %s", node.id, e)
                await ledger.update(node.id, FAILED, error=str(e))
                return
            except Exception as e:
                log.exception("Unexpected error applying %s", node.id)
                await ledger.update(node.id, FAILED, error=f"{type(e).__name__}: {e}")
                return

        log.info("%s is %s (%s)", node.id, result.outcome, result.resource_id)
        await ledger.update(node.id, APPLIED, resource_id=result.resource_id, outcome=result.outcome)

    async def ensure(self, node: ResourceNode, payload: Mapping[str, Any]) -> EnsureResult:
        operation = get_ensure_operation(self.client, node.kind)

        def log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            log.warning("Transient error applying %s (attempt %s): %s", node.id, state.attempt_number, exc)

        return await retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception_type(TransientCloudError),
            before_sleep=log_retry,
            reraise=True,
        )(operation)(payload, node.context)
