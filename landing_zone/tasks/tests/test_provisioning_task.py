# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from json import dumps
from pathlib import Path
from signal import SIGINT, SIGTERM
from tempfile import TemporaryDirectory
from unittest.mock import ANY, call

# project
from cache.ledger_cache import APPLIED, FAILED, LEDGER_CACHE_BLOB, SKIPPED, deserialize_ledger_cache
from tasks.errors import CloudValidationError, MissingField, PartialApply
from tasks.graph import NodeKind
from tasks.provisioning_task import PROVISIONING_TASK_NAME, ProvisioningTask
from tasks.tests.common import HUB, HUB_SUBSCRIPTION_ID, PRINCIPAL_ID, AsyncMockClient, FakeCloudClient, TaskTestCase

CONFIG = """
subscriptions:
  sub-a:
    display_name: Tenant A
    management_group_id: mg-landing-zones
    tags: {owner: team-a}
    virtual_network:
      name: vnet-a
      resource_group_name: rg-network
      address_space: [10.0.0.0/16]
      subnets: [{name: subnet1, address_prefix: 10.0.1.0/24}]
      hub_peering_enabled: true
  sub-b:
    display_name: Tenant B
    management_group_id: mg-landing-zones
    resource_groups:
      app: {name: rg-app}
"""


class TestProvisioningTask(TaskTestCase):
    TASK_NAME = PROVISIONING_TASK_NAME

    def setUp(self) -> None:
        super().setUp()
        config_dir = TemporaryDirectory()
        self.addCleanup(config_dir.cleanup)
        self.config_path = Path(config_dir.name) / "landing_zone.yaml"
        self.config_path.write_text(CONFIG)
        self.env.update(
            {
                "LANDING_ZONE_CONFIG_PATH": str(self.config_path),
                "OWNER_PRINCIPAL_ID": PRINCIPAL_ID,
                "CONNECTIVITY_SUBSCRIPTION_ID": HUB_SUBSCRIPTION_ID,
            }
        )
        env_mock = self.patch("environ")
        env_mock.get.side_effect = lambda k, default=None: self.env.get(k, default)

        self.cloud_client = FakeCloudClient()
        self.azure_cloud_client = self.patch("AzureCloudClient", return_value=self.cloud_client)
        self.hub_client = AsyncMockClient()
        self.hub_client.find_hub.return_value = HUB
        self.hub_network_client = self.patch("HubNetworkClient", return_value=self.hub_client)
        self.loop = self.patch("get_running_loop").return_value

    async def run_provisioning_task(self, ledger_cache_state: str = "") -> ProvisioningTask:
        async with ProvisioningTask(ledger_cache_state) as task:
            await task.run()
        return task

    @property
    def ledger_cache(self):
        return self.cache_value(LEDGER_CACHE_BLOB, deserialize_ledger_cache)

    async def test_provisions_everything(self):
        await self.run_provisioning_task()

        self.azure_cloud_client.assert_called_once_with(self.credential)
        self.hub_network_client.assert_called_once_with(self.credential, HUB_SUBSCRIPTION_ID)
        ledger = self.ledger_cache
        self.assertEqual(len(ledger), 12)
        self.assertEqual({record["status"] for record in ledger}, {APPLIED})
        self.assertEqual(ledger[0]["node_id"], "subscription/sub-a")
        self.assertEqual(ledger[1]["node_id"], "subscription/sub-b")
        self.write_cache.assert_awaited_once_with(LEDGER_CACHE_BLOB, ANY)

    async def test_partial_apply_still_writes_ledger(self):
        self.cloud_client.fail(NodeKind.VIRTUAL_NETWORK, "vnet-a", CloudValidationError("address space overlaps"))

        with self.assertRaises(PartialApply):
            await self.run_provisioning_task()

        self.write_cache.assert_awaited_once_with(LEDGER_CACHE_BLOB, ANY)
        statuses = {record["node_id"]: record["status"] for record in self.ledger_cache}
        self.assertEqual(statuses["virtual_network/sub-a"], FAILED)
        self.assertEqual(statuses["subnet/sub-a-subnet1"], SKIPPED)
        self.assertEqual(statuses["resource_group/sub-b-app"], APPLIED)

    async def test_config_errors_abort_before_any_cloud_call(self):
        self.config_path.write_text(CONFIG.replace("      resource_group_name: rg-network\n", ""))

        with self.assertRaises(MissingField) as ctx:
            await self.run_provisioning_task()

        self.assertEqual(ctx.exception.field, "resource_group_name")
        self.assertEqual(self.cloud_client.calls, [])
        self.write_cache.assert_not_awaited()

    async def test_peering_without_hub_fails(self):
        self.hub_client.find_hub.return_value = None

        with self.assertRaises(MissingField) as ctx:
            await self.run_provisioning_task()

        self.assertEqual(ctx.exception.field, "hub_network")
        self.azure_cloud_client.assert_not_called()

    async def test_hub_override(self):
        self.hub_client.find_hub.return_value = None
        self.env["HUB_VIRTUAL_NETWORK_ID"] = HUB.resource_id

        await self.run_provisioning_task()

        self.assertIn("vnet-hub-to-sub-a", self.cloud_client.calls_for(NodeKind.PEERING))

    async def test_no_connectivity_subscription_uses_override(self):
        del self.env["CONNECTIVITY_SUBSCRIPTION_ID"]
        self.env["HUB_VIRTUAL_NETWORK_ID"] = HUB.resource_id

        await self.run_provisioning_task()

        self.hub_network_client.assert_not_called()
        self.assertEqual({record["status"] for record in self.ledger_cache}, {APPLIED})

    async def test_concurrency_settings(self):
        self.env.update({"MAX_CONCURRENCY": "1", "MAX_ATTEMPTS": "0"})
        task = ProvisioningTask("")
        self.assertEqual(task.max_concurrency, 1)
        self.assertEqual(task.max_attempts, 5)
        self.assertEqual(task.role_definition_id, "8e3af657-a8ff-443c-a75c-2fe8c4bcb635")
        self.assertEqual(task.default_location, "japaneast")

    async def test_drift_is_reported(self):
        previous = [
            {"node_id": "subscription/sub-a", "kind": "subscription", "status": APPLIED, "resource_id": "/subscriptions/old"},
            {"node_id": "subnet/sub-a-subnet1", "kind": "subnet", "status": SKIPPED},
        ]

        with self.assertLogs("tasks.task.ProvisioningTask", "INFO") as logs:
            await self.run_provisioning_task(dumps(previous))

        output = "\n".join(logs.output)
        self.assertIn("Resource ids changed since the last run: ['subscription/sub-a']", output)
        self.assertIn("Recovered since the last run: ['subnet/sub-a-subnet1']", output)

    async def test_invalid_previous_ledger(self):
        with self.assertLogs("tasks.task.ProvisioningTask", "WARNING") as logs:
            task = ProvisioningTask("{not json")
        self.assertEqual(task.previous_ledger, [])
        self.assertIn("Ledger cache is in an invalid format", logs.output[0])

    async def test_metrics(self):
        task = await self.run_provisioning_task()
        self.assertEqual(task.metrics, {"nodes.applied": 12, "nodes.failed": 0, "nodes.skipped": 0})

    async def test_metrics_after_partial_apply(self):
        self.cloud_client.fail(NodeKind.VIRTUAL_NETWORK, "vnet-a", CloudValidationError("address space overlaps"))
        task = ProvisioningTask("")

        with self.assertRaises(PartialApply):
            async with task:
                await task.run()

        statuses = [record["status"] for record in self.ledger_cache]
        self.assertEqual(
            task.metrics,
            {
                "nodes.applied": statuses.count(APPLIED),
                "nodes.failed": 1,
                "nodes.skipped": statuses.count(SKIPPED),
            },
        )
        self.assertEqual(sum(task.metrics.values()), 12)

    async def test_signal_handlers_are_removed(self):
        task = await self.run_provisioning_task()

        self.assertEqual(
            self.loop.add_signal_handler.call_args_list,
            [call(SIGTERM, task.request_cancel, SIGTERM), call(SIGINT, task.request_cancel, SIGINT)],
        )
        self.assertEqual(self.loop.remove_signal_handler.call_args_list, [call(SIGTERM), call(SIGINT)])

    async def test_signal_handlers_are_removed_after_partial_apply(self):
        self.cloud_client.fail(NodeKind.VIRTUAL_NETWORK, "vnet-a", CloudValidationError("address space overlaps"))

        with self.assertRaises(PartialApply):
            await self.run_provisioning_task()

        self.assertEqual(self.loop.remove_signal_handler.call_args_list, [call(SIGTERM), call(SIGINT)])

    async def test_sigterm_skips_nodes_not_started(self):
        ensure = self.cloud_client.ensure

        async def ensure_then_sigterm(kind, payload, context):
            result = await ensure(kind, payload, context)
            _, handler, *args = self.loop.add_signal_handler.call_args_list[0].args
            handler(*args)
            return result

        self.cloud_client.ensure = ensure_then_sigterm  # type: ignore

        with self.assertLogs("tasks.task.ProvisioningTask", "WARNING") as logs:
            with self.assertRaises(PartialApply):
                await self.run_provisioning_task()

        self.assertIn("Received SIGTERM, nodes that have not started will be skipped", logs.output[0])
        self.write_cache.assert_awaited_once_with(LEDGER_CACHE_BLOB, ANY)
        ledger = {record["node_id"]: record for record in self.ledger_cache}
        self.assertEqual(ledger["subscription/sub-a"]["status"], APPLIED)
        self.assertEqual(ledger["resource_group/sub-b-app"]["status"], SKIPPED)
        self.assertEqual(ledger["resource_group/sub-b-app"]["error"], "run cancelled")
        self.assertNotIn(FAILED, {record["status"] for record in ledger.values()})
        self.assertEqual(self.loop.remove_signal_handler.call_args_list, [call(SIGTERM), call(SIGINT)])
