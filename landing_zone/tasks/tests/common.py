# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from asyncio import sleep
from collections.abc import AsyncIterable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Self, TypeVar
from unittest import IsolatedAsyncioTestCase
from unittest.mock import ANY, AsyncMock, MagicMock, Mock, call, patch
from uuid import NAMESPACE_DNS, uuid5

# project
from cache.common import InvalidCacheError
from cache.ledger_cache import CREATED_OR_UPDATED, UNCHANGED
from tasks.client.cloud_client import EnsureResult
from tasks.common import get_resource_group_id, get_subscription_id, get_virtual_network_id
from tasks.flattener import flatten
from tasks.graph import DependencyGraphBuilder, ExecutionContext, NodeKind, ResourceGraph
from tasks.specs import HubNetwork, SubnetSpec, SubscriptionSpec, VirtualNetworkSpec

HUB_SUBSCRIPTION_ID = "0b5f3c2e-8a5e-4a8e-9f57-6c1c7a1f0d01"
HUB = HubNetwork(
    resource_id=get_virtual_network_id(HUB_SUBSCRIPTION_ID, "rg-connectivity", "vnet-hub"),
    name="vnet-hub",
    resource_group="rg-connectivity",
    subscription_id=HUB_SUBSCRIPTION_ID,
)
PRINCIPAL_ID = "4f6d1b35-3a31-4c2b-a0de-5d1e7c0b9a11"
ROLE_DEFINITION_ID = "8e3af657-a8ff-443c-a75c-2fe8c4bcb635"


class AsyncTestCase(IsolatedAsyncioTestCase):
    def patch_path(self, path: str, **kwargs: Any) -> MagicMock | AsyncMock:
        p = patch(path, **kwargs)
        self.addCleanup(p.stop)
        return p.start()

    def assertCalledTimesWith(self, mock: AsyncMock, times: int, /, *args: Any, **kwargs: Any):
        self.assertEqual(mock.await_count, times)
        self.assertEqual([call(*args, **kwargs)] * times, mock.await_args_list)


T = TypeVar("T")


class TaskTestCase(AsyncTestCase):
    TASK_NAME: str = NotImplemented

    def patch(self, obj: str, **kwargs: Any):
        return self.patch_path(f"tasks.{self.TASK_NAME}.{obj}", **kwargs)

    def setUp(self) -> None:
        cred_mock = self.patch_path("tasks.task.DefaultAzureCredential", return_value=AsyncMockClient())
        self.credential = cred_mock.return_value
        self.credential.side_effect = AsyncMock
        self.datadog_api_client = self.patch_path("tasks.task.AsyncApiClient", return_value=AsyncMockClient())
        self.datadog_logs_api = self.patch_path("tasks.task.LogsApi", return_value=AsyncMock())
        self.datadog_metrics_api = self.patch_path("tasks.task.MetricsApi", return_value=AsyncMock())
        self.env: dict[str, str] = {}
        for module in ("tasks.task", "cache.env"):
            env_mock = self.patch_path(f"{module}.environ", create=True)
            env_mock.get.side_effect = lambda k, default=None: self.env.get(k, default)

        with suppress(AttributeError):
            self.write_cache: AsyncMock = self.patch("write_cache")

    def cache_value(self, cache_name: str, deserialize_cache: Callable[[str], T | None]) -> T:
        self.write_cache.assert_called_with(cache_name, ANY)
        raw_cache = self.write_cache.call_args_list[-1][0][1]
        cache = deserialize_cache(raw_cache)
        if cache is None:  # pragma: no cover
            # should never happen when tests pass, but it provides a useful error message if they don't
            raise InvalidCacheError(f"{cache_name} is in an invalid format after the task")
        return cache


async def async_generator(*items: T) -> AsyncIterable[T]:
    for x in items:
        if isinstance(x, Exception):
            raise x
        yield x


class UnexpectedException(Exception):
    """Testing for exceptions that we havent accounted for"""

    pass


def mock(**kwargs: Any) -> Mock:
    m = Mock()
    for k, v in kwargs.items():
        setattr(m, k, v)
    return m


def AsyncMockClient(**kwargs: Any) -> AsyncMock:
    """An AsyncMock with the context manager methods set up to use as a client"""
    m = AsyncMock(**kwargs)
    m.__aenter__.return_value = m
    m.__aexit__.return_value = None
    return m


@dataclass(frozen=True)
class AzureModelMatcher:
    expected: dict[str, Any]

    def __eq__(self, other: Any) -> bool:
        with suppress(Exception):
            return other.as_dict() == self.expected
        return False  # pragma: no cover


def subscription_spec(key: str, **kwargs: Any) -> SubscriptionSpec:
    kwargs.setdefault("display_name", f"Subscription {key}")
    kwargs.setdefault("management_group_id", "mg-landing-zones")
    return SubscriptionSpec(key=key, **kwargs)


def spoke_network(name: str, *subnets: SubnetSpec, **kwargs: Any) -> VirtualNetworkSpec:
    kwargs.setdefault("resource_group_name", "rg-network")
    kwargs.setdefault("address_space", ("10.0.0.0/16",))
    return VirtualNetworkSpec(name=name, subnets=subnets, **kwargs)


def single_spoke() -> SubscriptionSpec:
    """sub-a: no resource groups, vnet-a (10.0.0.0/16) with subnet1 (10.0.1.0/24), peered with the hub"""
    return subscription_spec(
        "sub-a", virtual_network=spoke_network("vnet-a", SubnetSpec("subnet1", "10.0.1.0/24"), hub_peering_enabled=True)
    )


def build_graph(
    *subs: SubscriptionSpec, hub: HubNetwork | None = HUB, extra_dependencies: list[tuple[str, str]] | None = None
) -> ResourceGraph:
    specs = {sub.key: sub for sub in subs}
    builder = DependencyGraphBuilder(specs, flatten(specs), hub, PRINCIPAL_ID, ROLE_DEFINITION_ID)
    return builder.build(extra_dependencies or [])


def fake_subscription_id(alias: str) -> str:
    return str(uuid5(NAMESPACE_DNS, alias))


IDENTITY_FIELDS: dict[NodeKind, tuple[str, ...]] = {
    NodeKind.SUBSCRIPTION: ("alias",),
    NodeKind.ROLE_ASSIGNMENT: ("subscription_id", "name"),
    NodeKind.MANAGEMENT_GROUP_ASSOCIATION: ("subscription_id",),
    NodeKind.RESOURCE_GROUP: ("subscription_id", "name"),
    NodeKind.PROVIDER_REGISTRATION: ("subscription_id", "namespace"),
    NodeKind.VIRTUAL_NETWORK: ("subscription_id", "resource_group", "name"),
    NodeKind.SUBNET: ("subscription_id", "resource_group", "virtual_network", "name"),
    NodeKind.PEERING: ("subscription_id", "resource_group", "virtual_network", "name"),
}


def fake_resource_id(kind: NodeKind, payload: Mapping[str, Any]) -> str:
    if kind is NodeKind.SUBSCRIPTION:
        return get_subscription_id(fake_subscription_id(payload["alias"]))
    sub = payload["subscription_id"]
    match kind:
        case NodeKind.ROLE_ASSIGNMENT:
            return f"{get_subscription_id(sub)}/providers/Microsoft.Authorization/roleAssignments/{payload['name']}"
        case NodeKind.MANAGEMENT_GROUP_ASSOCIATION:
            return f"/providers/Microsoft.Management/managementGroups/{payload['management_group_id']}/subscriptions/{sub}"
        case NodeKind.RESOURCE_GROUP:
            return get_resource_group_id(sub, payload["name"])
        case NodeKind.PROVIDER_REGISTRATION:
            return f"{get_subscription_id(sub)}/providers/{payload['namespace']}"
        case NodeKind.VIRTUAL_NETWORK:
            return get_virtual_network_id(sub, payload["resource_group"], payload["name"])
        case NodeKind.SUBNET:
            vnet_id = get_virtual_network_id(sub, payload["resource_group"], payload["virtual_network"])
            return f"{vnet_id}/subnets/{payload['name']}"
        case _:
            vnet_id = get_virtual_network_id(sub, payload["resource_group"], payload["virtual_network"])
            return f"{vnet_id}/virtualNetworkPeerings/{payload['name']}"


class FakeCloudClient:
    """In memory CloudClient. Resources are created on the first ensure and unchanged afterwards,
    unless a non tag field of the payload changed."""

    def __init__(self) -> None:
        self.resources: dict[tuple[NodeKind, tuple[str, ...]], dict[str, Any]] = {}
        self.calls: list[tuple[NodeKind, str, ExecutionContext]] = []
        self.failures: dict[tuple[NodeKind, str], list[Any]] = {}
        self.active = 0
        self.max_active = 0

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *_: Any) -> None:
        return None

    def fail(self, kind: NodeKind, name: str, error: Exception, times: int | None = None) -> None:
        """Raise `error` for the next `times` ensure calls on the named resource, every call if times is None"""
        self.failures[(kind, name)] = [error, times]

    def calls_for(self, kind: NodeKind) -> list[str]:
        return [name for k, name, _ in self.calls if k is kind]

    async def ensure(self, kind: NodeKind, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        name = payload.get("alias") or payload.get("name") or payload.get("namespace") or ""
        self.calls.append((kind, name, context))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await sleep(0)
            if failure := self.failures.get((kind, name)):
                error, times = failure
                if times is None or times > 0:
                    if times is not None:
                        failure[1] = times - 1
                    raise error
            identity = (kind, tuple(str(payload[f]) for f in IDENTITY_FIELDS[kind]))
            existing = self.resources.get(identity)
            comparable = {k: v for k, v in payload.items() if k != "tags"}
            if existing is not None and existing == comparable:
                return EnsureResult(fake_resource_id(kind, payload), UNCHANGED)
            self.resources[identity] = comparable
            return EnsureResult(fake_resource_id(kind, payload), CREATED_OR_UPDATED)
        finally:
            self.active -= 1

    async def ensure_subscription(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        return await self.ensure(NodeKind.SUBSCRIPTION, payload, context)

    async def ensure_role_assignment(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        return await self.ensure(NodeKind.ROLE_ASSIGNMENT, payload, context)

    async def ensure_management_group_association(
        self, payload: Mapping[str, Any], context: ExecutionContext
    ) -> EnsureResult:
        return await self.ensure(NodeKind.MANAGEMENT_GROUP_ASSOCIATION, payload, context)

    async def ensure_resource_group(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        return await self.ensure(NodeKind.RESOURCE_GROUP, payload, context)

    async def ensure_provider_registration(
        self, payload: Mapping[str, Any], context: ExecutionContext
    ) -> EnsureResult:
        return await self.ensure(NodeKind.PROVIDER_REGISTRATION, payload, context)

    async def ensure_virtual_network(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        return await self.ensure(NodeKind.VIRTUAL_NETWORK, payload, context)

    async def ensure_subnet(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        return await self.ensure(NodeKind.SUBNET, payload, context)

    async def ensure_peering(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        return await self.ensure(NodeKind.PEERING, payload, context)
