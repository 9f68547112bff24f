# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from asyncio import gather
from collections.abc import Awaitable, Callable, Mapping
from contextlib import AbstractAsyncContextManager
from functools import wraps
from logging import getLogger
from types import TracebackType
from typing import Any, Final, NamedTuple, ParamSpec, Protocol, Self, TypeVar

# 3p
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity.aio import DefaultAzureCredential
from azure.mgmt.authorization.aio import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters
from azure.mgmt.managementgroups.aio import ManagementGroupsAPI
from azure.mgmt.network.aio import NetworkManagementClient
from azure.mgmt.network.models import (
    AddressSpace,
    SubResource,
    Subnet,
    VirtualNetwork,
    VirtualNetworkPeering,
)
from azure.mgmt.resource.resources.v2021_01_01.aio import ResourceManagementClient
from azure.mgmt.resource.resources.v2021_01_01.models import ResourceGroup
from azure.mgmt.subscription.aio import SubscriptionClient
from azure.mgmt.subscription.models import (
    PutAliasRequest,
    PutAliasRequestAdditionalProperties,
    PutAliasRequestProperties,
    SubscriptionName,
)

# project
from cache.ledger_cache import CREATED_OR_UPDATED, UNCHANGED, EnsureOutcome
from tasks.common import diverged_fields, get_role_definition_id, get_subscription_id
from tasks.errors import CloudError, CloudPolicyError, CloudValidationError, TransientCloudError
from tasks.graph import ExecutionContext, NodeKind

log = getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

REGISTERED: Final = "Registered"

TRANSIENT_CONFLICT_CODES: Final = frozenset(
    {
        # provider registration has been requested but has not propagated yet
        "MissingSubscriptionRegistration",
        "AnotherOperationInProgress",
        "RetryableError",
        "ReferencedResourceNotProvisioned",
    }
)
POLICY_ERROR_CODES: Final = frozenset({"RequestDisallowedByPolicy", "AuthorizationFailed", "LinkedAuthorizationFailed"})


class EnsureResult(NamedTuple):
    resource_id: str
    outcome: EnsureOutcome


class CloudClient(Protocol):
    """Idempotent control plane operations, one per resource kind.

    Each operation creates the resource if it is absent, updates it if it diverges from
    `payload` (tags excepted) and does nothing otherwise."""

    async def ensure_subscription(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult: ...

    async def ensure_role_assignment(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult: ...

    async def ensure_management_group_association(
        self, payload: Mapping[str, Any], context: ExecutionContext
    ) -> EnsureResult: ...

    async def ensure_resource_group(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult: ...

    async def ensure_provider_registration(
        self, payload: Mapping[str, Any], context: ExecutionContext
    ) -> EnsureResult: ...

    async def ensure_virtual_network(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult: ...

    async def ensure_subnet(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult: ...

    async def ensure_peering(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult: ...


EnsureOperation = Callable[[Mapping[str, Any], ExecutionContext], Awaitable[EnsureResult]]


def get_ensure_operation(client: CloudClient, kind: NodeKind) -> EnsureOperation:
    return getattr(client, f"ensure_{kind.value}")


def classify_http_error(e: HttpResponseError) -> CloudError:
    code = e.error.code if e.error else None
    status = e.status_code
    message = str(e.message or e)
    if status is None or status == 429 or status >= 500:
        return TransientCloudError(message)
    # a parent that was just created may not be visible yet
    if isinstance(e, ResourceNotFoundError) or status == 404:
        return TransientCloudError(message)
    if code in TRANSIENT_CONFLICT_CODES:
        return TransientCloudError(message)
    if status in (401, 403) or code in POLICY_ERROR_CODES:
        return CloudPolicyError(message)
    return CloudValidationError(message)


def translate_errors(f: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    """Translate azure-core exceptions into the cloud error taxonomy, so callers know what to retry"""

    @wraps(f)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return await f(*args, **kwargs)
        except CloudError:
            raise
        except ClientAuthenticationError as e:
            raise CloudPolicyError(str(e.message or e)) from e
        except HttpResponseError as e:
            raise classify_http_error(e) from e
        except (ServiceRequestError, ServiceResponseError) as e:
            raise TransientCloudError(str(e)) from e

    return wrapper


async def get_or_none(getter: Awaitable[T]) -> T | None:
    try:
        return await getter
    except ResourceNotFoundError:
        return None


class AzureCloudClient(AbstractAsyncContextManager["AzureCloudClient"]):
    def __init__(
        self, credential: DefaultAzureCredential, connectivity_credential: DefaultAzureCredential | None = None
    ) -> None:
        self.credential = credential
        self.connectivity_credential = connectivity_credential or credential
        self.subscription_client = SubscriptionClient(credential)
        self.management_groups_client = ManagementGroupsAPI(credential)
        self._clients: dict[tuple[type, ExecutionContext, str], Any] = {}

    async def __aenter__(self) -> Self:
        await gather(self.subscription_client.__aenter__(), self.management_groups_client.__aenter__())
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: TracebackType | None
    ) -> None:
        await gather(
            self.subscription_client.__aexit__(exc_type, exc_val, exc_tb),
            self.management_groups_client.__aexit__(exc_type, exc_val, exc_tb),
            *(client.close() for client in self._clients.values()),
        )
        self._clients.clear()

    def _client(self, client_type: type[T], context: ExecutionContext, subscription_id: str) -> T:
        key = (client_type, context, subscription_id)
        if key not in self._clients:
            credential = (
                self.connectivity_credential if context is ExecutionContext.CONNECTIVITY else self.credential
            )
            self._clients[key] = client_type(credential, subscription_id)  # type: ignore[call-arg]
        return self._clients[key]

    def resource_client(self, context: ExecutionContext, subscription_id: str) -> ResourceManagementClient:
        return self._client(ResourceManagementClient, context, subscription_id)

    def network_client(self, context: ExecutionContext, subscription_id: str) -> NetworkManagementClient:
        return self._client(NetworkManagementClient, context, subscription_id)

    def authorization_client(self, context: ExecutionContext, subscription_id: str) -> AuthorizationManagementClient:
        return self._client(AuthorizationManagementClient, context, subscription_id)

    @translate_errors
    async def ensure_subscription(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        alias_name = payload["alias"]
        alias = await get_or_none(self.subscription_client.alias.get(alias_name))
        if alias is not None and alias.properties and alias.properties.subscription_id:
            subscription_id = alias.properties.subscription_id
            subscription = await self.subscription_client.subscriptions.get(subscription_id)
            if subscription.display_name == payload["display_name"]:
                return EnsureResult(get_subscription_id(subscription_id), UNCHANGED)
            log.info("Renaming subscription %s to %s", subscription_id, payload["display_name"])
            await self.subscription_client.subscription.rename(
                subscription_id, SubscriptionName(subscription_name=payload["display_name"])
            )
            return EnsureResult(get_subscription_id(subscription_id), CREATED_OR_UPDATED)

        if not payload.get("billing_scope"):
            raise CloudValidationError(
                f"Subscription alias {alias_name} does not exist and no billing scope is configured to create it"
            )
        log.info("Creating subscription alias %s", alias_name)
        poller = await self.subscription_client.alias.begin_create(
            alias_name,
            PutAliasRequest(
                properties=PutAliasRequestProperties(
                    display_name=payload["display_name"],
                    workload=payload["workload"],
                    billing_scope=payload["billing_scope"],
                    additional_properties=PutAliasRequestAdditionalProperties(
                        management_group_id=payload.get("management_group_id"),
                        tags=payload.get("tags") or None,
                    ),
                )
            ),
        )
        created = await poller.result()
        if not created.properties or not created.properties.subscription_id:
            raise TransientCloudError(f"Subscription alias {alias_name} has no subscription id yet")
        return EnsureResult(get_subscription_id(created.properties.subscription_id), CREATED_OR_UPDATED)

    @translate_errors
    async def ensure_role_assignment(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        subscription_id = payload["subscription_id"]
        scope = get_subscription_id(subscription_id)
        role_definition_id = get_role_definition_id(subscription_id, payload["role_definition_id"])
        client = self.authorization_client(context, subscription_id)
        desired = {"role_definition_id": role_definition_id, "principal_id": payload["principal_id"]}

        existing = await get_or_none(client.role_assignments.get(scope, payload["name"]))
        if existing is not None:
            current = {"role_definition_id": existing.role_definition_id, "principal_id": existing.principal_id}
            if not diverged_fields(current, desired):
                return EnsureResult(str(existing.id), UNCHANGED)
            # role assignments cannot be updated in place
            log.info("Replacing role assignment %s on %s", payload["name"], scope)
            await client.role_assignments.delete(scope, payload["name"])

        assignment = await client.role_assignments.create(
            scope, payload["name"], RoleAssignmentCreateParameters(**desired)
        )
        return EnsureResult(str(assignment.id), CREATED_OR_UPDATED)

    @translate_errors
    async def ensure_management_group_association(
        self, payload: Mapping[str, Any], context: ExecutionContext
    ) -> EnsureResult:
        group_id = payload["management_group_id"]
        subscription_id = payload["subscription_id"]
        operations = self.management_groups_client.management_group_subscriptions
        existing = await get_or_none(operations.get_subscription(group_id, subscription_id))
        if existing is not None:
            return EnsureResult(str(existing.id), UNCHANGED)
        log.info("Moving subscription %s under management group %s", subscription_id, group_id)
        association = await operations.create(group_id, subscription_id)
        return EnsureResult(str(association.id), CREATED_OR_UPDATED)

    @translate_errors
    async def ensure_resource_group(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        client = self.resource_client(context, payload["subscription_id"])
        desired = {"location": payload["location"]}
        existing = await get_or_none(client.resource_groups.get(payload["name"]))
        if existing is not None and not diverged_fields({"location": existing.location}, desired):
            return EnsureResult(str(existing.id), UNCHANGED)
        tags = existing.tags if existing is not None else payload.get("tags")
        resource_group = await client.resource_groups.create_or_update(
            payload["name"], ResourceGroup(location=payload["location"], tags=tags)
        )
        return EnsureResult(str(resource_group.id), CREATED_OR_UPDATED)

    @translate_errors
    async def ensure_provider_registration(
        self, payload: Mapping[str, Any], context: ExecutionContext
    ) -> EnsureResult:
        subscription_id = payload["subscription_id"]
        namespace = payload["namespace"]
        client = self.resource_client(context, subscription_id)
        provider = await client.providers.get(namespace)
        provider_id = provider.id or f"{get_subscription_id(subscription_id)}/providers/{namespace}"
        if provider.registration_state == REGISTERED:
            return EnsureResult(provider_id, UNCHANGED)
        log.info("Registering resource provider %s in subscription %s", namespace, subscription_id)
        await client.providers.register(namespace)
        return EnsureResult(provider_id, CREATED_OR_UPDATED)

    @translate_errors
    async def ensure_virtual_network(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        subscription_id = payload["subscription_id"]
        resource_group = payload["resource_group"]
        client = self.network_client(context, subscription_id)
        desired = {"location": payload["location"], "address_space": list(payload["address_space"])}

        vnet = await get_or_none(client.virtual_networks.get(resource_group, payload["name"]))
        if vnet is None:
            await self.ensure_resource_group_exists(context, subscription_id, resource_group, payload)
            vnet = VirtualNetwork(location=payload["location"], tags=payload.get("tags"))
        else:
            current = {
                "location": vnet.location,
                "address_space": list(vnet.address_space.address_prefixes or []) if vnet.address_space else [],
            }
            if not diverged_fields(current, desired):
                return EnsureResult(str(vnet.id), UNCHANGED)
            # the existing model is sent back so subnets and peerings are left untouched

        vnet.address_space = AddressSpace(address_prefixes=desired["address_space"])
        vnet.location = payload["location"]
        log.info("Creating or updating virtual network %s in %s", payload["name"], resource_group)
        poller = await client.virtual_networks.begin_create_or_update(resource_group, payload["name"], vnet)
        result = await poller.result()
        return EnsureResult(str(result.id), CREATED_OR_UPDATED)

    async def ensure_resource_group_exists(
        self, context: ExecutionContext, subscription_id: str, resource_group: str, payload: Mapping[str, Any]
    ) -> None:
        client = self.resource_client(context, subscription_id)
        if not await client.resource_groups.check_existence(resource_group):
            log.info("Creating resource group %s for virtual network %s", resource_group, payload["name"])
            await client.resource_groups.create_or_update(
                resource_group, ResourceGroup(location=payload["location"], tags=payload.get("tags"))
            )

    @translate_errors
    async def ensure_subnet(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        client = self.network_client(context, payload["subscription_id"])
        args = (payload["resource_group"], payload["virtual_network"], payload["name"])
        subnet = await get_or_none(client.subnets.get(*args))
        if subnet is not None and not diverged_fields(
            {"address_prefix": subnet.address_prefix}, {"address_prefix": payload["address_prefix"]}
        ):
            return EnsureResult(str(subnet.id), UNCHANGED)
        subnet = subnet or Subnet()
        subnet.address_prefix = payload["address_prefix"]
        poller = await client.subnets.begin_create_or_update(*args, subnet)
        result = await poller.result()
        return EnsureResult(str(result.id), CREATED_OR_UPDATED)

    @translate_errors
    async def ensure_peering(self, payload: Mapping[str, Any], context: ExecutionContext) -> EnsureResult:
        client = self.network_client(context, payload["subscription_id"])
        args = (payload["resource_group"], payload["virtual_network"], payload["name"])
        desired = {
            "remote_virtual_network_id": payload["remote_virtual_network_id"],
            "allow_virtual_network_access": payload["allow_virtual_network_access"],
            "allow_forwarded_traffic": payload["allow_forwarded_traffic"],
            "allow_gateway_transit": payload["allow_gateway_transit"],
            "use_remote_gateways": payload["use_remote_gateways"],
        }
        peering = await get_or_none(client.virtual_network_peerings.get(*args))
        if peering is not None:
            current = {
                "remote_virtual_network_id": peering.remote_virtual_network.id if peering.remote_virtual_network else None,
                "allow_virtual_network_access": peering.allow_virtual_network_access,
                "allow_forwarded_traffic": peering.allow_forwarded_traffic,
                "allow_gateway_transit": peering.allow_gateway_transit,
                "use_remote_gateways": peering.use_remote_gateways,
            }
            if not diverged_fields(current, desired):
                return EnsureResult(str(peering.id), UNCHANGED)

        log.info("Creating or updating peering %s on %s (%s context)", payload["name"], args[1], context.value)
        poller = await client.virtual_network_peerings.begin_create_or_update(
            *args,
            VirtualNetworkPeering(
                remote_virtual_network=SubResource(id=desired["remote_virtual_network_id"]),
                allow_virtual_network_access=desired["allow_virtual_network_access"],
                allow_forwarded_traffic=desired["allow_forwarded_traffic"],
                allow_gateway_transit=desired["allow_gateway_transit"],
                use_remote_gateways=desired["use_remote_gateways"],
            ),
        )
        result = await poller.result()
        return EnsureResult(str(result.id), CREATED_OR_UPDATED)
