# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from asyncio import Event, get_running_loop, run
from json import dumps
from os import environ
from signal import SIGINT, SIGTERM, Signals

# project
from cache.common import write_cache
from cache.env import (
    CONNECTIVITY_SUBSCRIPTION_ID_SETTING,
    DEFAULT_LOCATION_SETTING,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_CONCURRENCY,
    HUB_VIRTUAL_NETWORK_ID_SETTING,
    LANDING_ZONE_CONFIG_PATH_SETTING,
    MAX_ATTEMPTS_SETTING,
    MAX_CONCURRENCY_SETTING,
    OWNER_PRINCIPAL_ID_SETTING,
    OWNER_ROLE_DEFINITION_ID,
    ROLE_DEFINITION_ID_SETTING,
    get_config_option,
    parse_config_option,
    positive_int,
)
from cache.ledger_cache import (
    APPLIED,
    FAILED,
    LEDGER_CACHE_BLOB,
    SKIPPED,
    LedgerCache,
    deserialize_ledger_cache,
    ledger_drift,
)
from cache.subscription_config import load_subscription_specs
from tasks.applier import Applier, Ledger
from tasks.client.cloud_client import AzureCloudClient
from tasks.client.hub_network_client import HubNetworkClient, resolve_hub_network
from tasks.errors import PartialApply
from tasks.flattener import flatten
from tasks.graph import DependencyGraphBuilder
from tasks.planner import Plan, plan
from tasks.specs import DEFAULT_LOCATION, HubNetwork
from tasks.task import Task, task_main

PROVISIONING_TASK_NAME = "provisioning_task"
CANCEL_SIGNALS = (SIGTERM, SIGINT)


class ProvisioningTask(Task):
    NAME = PROVISIONING_TASK_NAME

    def __init__(self, ledger_cache_state: str) -> None:
        super().__init__()
        self.config_path = get_config_option(LANDING_ZONE_CONFIG_PATH_SETTING)
        self.principal_id = get_config_option(OWNER_PRINCIPAL_ID_SETTING)
        self.role_definition_id = environ.get(ROLE_DEFINITION_ID_SETTING) or OWNER_ROLE_DEFINITION_ID
        self.connectivity_subscription_id = environ.get(CONNECTIVITY_SUBSCRIPTION_ID_SETTING)
        self.hub_override_id = environ.get(HUB_VIRTUAL_NETWORK_ID_SETTING)
        self.default_location = environ.get(DEFAULT_LOCATION_SETTING) or DEFAULT_LOCATION
        self.max_concurrency = parse_config_option(MAX_CONCURRENCY_SETTING, positive_int, DEFAULT_MAX_CONCURRENCY)
        self.max_attempts = parse_config_option(MAX_ATTEMPTS_SETTING, positive_int, DEFAULT_MAX_ATTEMPTS)
        self.cancel = Event()

        previous_ledger = deserialize_ledger_cache(ledger_cache_state) if ledger_cache_state else []
        if previous_ledger is None:
            self.log.warning("Ledger cache is in an invalid format, drift will not be reported")
            previous_ledger = []
        self.previous_ledger: LedgerCache = previous_ledger
        self.ledger: Ledger | None = None

    async def run(self) -> None:
        # configuration and graph errors are raised here, before anything is mutated
        specs = load_subscription_specs(self.config_path)
        resources = flatten(specs, default_location=self.default_location)
        hub = await self.get_hub_network()
        graph = DependencyGraphBuilder(specs, resources, hub, self.principal_id, self.role_definition_id).build()
        provisioning_plan = plan(graph)
        self.log_plan(provisioning_plan)

        loop = get_running_loop()
        for sig in CANCEL_SIGNALS:
            loop.add_signal_handler(sig, self.request_cancel, sig)
        try:
            async with AzureCloudClient(self.credential) as client:
                applier = Applier(client, max_workers=self.max_concurrency, max_attempts=self.max_attempts)
                try:
                    self.ledger = await applier.apply(provisioning_plan, self.cancel)
                except PartialApply as e:
                    self.ledger = e.ledger
                    self.record_metrics()
                    self.log.error("Provisioning finished with failures. Failed: %s Skipped: %s", e.failed, e.skipped)
                    await self.write_caches()
                    raise
        finally:
            for sig in CANCEL_SIGNALS:
                loop.remove_signal_handler(sig)
        self.record_metrics()
        self.log.info("Provisioning finished, %s nodes applied", len(provisioning_plan.nodes()))

    def request_cancel(self, sig: Signals) -> None:
        self.log.warning("Received %s, nodes that have not started will be skipped", sig.name)
        self.cancel.set()

    def record_metrics(self) -> None:
        if self.ledger is None:
            return
        for status in (APPLIED, FAILED, SKIPPED):
            self.metrics[f"nodes.{status}"] = len(self.ledger.node_ids_with_status(status))

    async def get_hub_network(self) -> HubNetwork | None:
        discovered = None
        if self.connectivity_subscription_id:
            async with HubNetworkClient(self.credential, self.connectivity_subscription_id) as hub_client:
                discovered = await hub_client.find_hub()
        return resolve_hub_network(discovered, self.hub_override_id)

    def log_plan(self, provisioning_plan: Plan) -> None:
        self.log.info("Planned %s nodes in %s batches", len(provisioning_plan.nodes()), len(provisioning_plan))
        self.log.debug("Plan:\n%s", provisioning_plan.render())

    def report_drift(self, current: LedgerCache) -> None:
        if not self.previous_ledger:
            return
        drift = ledger_drift(self.previous_ledger, current)
        if drift["changed"]:
            self.log.warning("Resource ids changed since the last run: %s", drift["changed"])
        if drift["recovered"]:
            self.log.info("Recovered since the last run: %s", drift["recovered"])
        if drift["regressed"]:
            self.log.warning("Applied last run but not this run: %s", drift["regressed"])

    async def write_caches(self) -> None:
        if self.ledger is None:
            return
        records = self.ledger.to_records()
        self.report_drift(records)
        await write_cache(LEDGER_CACHE_BLOB, dumps(records))


async def main() -> None:
    await task_main(ProvisioningTask, [LEDGER_CACHE_BLOB])


if __name__ == "__main__":  # pragma: no cover
    run(main())
