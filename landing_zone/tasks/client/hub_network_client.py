# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from contextlib import AbstractAsyncContextManager
from logging import getLogger
from types import TracebackType
from typing import Self

# 3p
from azure.identity.aio import DefaultAzureCredential
from azure.mgmt.core.tools import is_valid_resource_id, parse_resource_id
from azure.mgmt.network.aio import NetworkManagementClient
from azure.mgmt.network.models import VirtualNetwork

# project
from tasks.common import HUB_ROLE_TAG, HUB_ROLE_TAG_VALUE
from tasks.errors import ConfigValidationError
from tasks.specs import HubNetwork

log = getLogger(__name__)


def hub_network_from_id(resource_id: str) -> HubNetwork:
    if not is_valid_resource_id(resource_id):
        raise ConfigValidationError(f"Invalid hub virtual network id: {resource_id}")
    parts = parse_resource_id(resource_id)
    if parts.get("type", "").lower() != "virtualnetworks" or "resource_group" not in parts:
        raise ConfigValidationError(f"Hub network id does not point at a virtual network: {resource_id}")
    return HubNetwork(
        resource_id=resource_id,
        name=parts["name"],
        resource_group=parts["resource_group"],
        subscription_id=parts["subscription"],
    )


def is_hub(vnet: VirtualNetwork) -> bool:
    return (vnet.tags or {}).get(HUB_ROLE_TAG, "").lower() == HUB_ROLE_TAG_VALUE


def resolve_hub_network(discovered: HubNetwork | None, override_id: str | None) -> HubNetwork | None:
    """The discovered hub wins, otherwise fall back to the explicitly configured hub network id"""
    if discovered is not None:
        return discovered
    if override_id:
        log.info("No hub network discovered, using configured hub %s", override_id)
        return hub_network_from_id(override_id)
    return None


class HubNetworkClient(AbstractAsyncContextManager["HubNetworkClient"]):
    """Looks up the hub virtual network in the connectivity subscription"""

    def __init__(self, credential: DefaultAzureCredential, subscription_id: str) -> None:
        self.subscription_id = subscription_id
        self.network_client = NetworkManagementClient(credential, subscription_id)

    async def __aenter__(self) -> Self:
        await self.network_client.__aenter__()
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: TracebackType | None
    ) -> None:
        await self.network_client.__aexit__(exc_type, exc_val, exc_tb)

    async def find_hub(self) -> HubNetwork | None:
        async for vnet in self.network_client.virtual_networks.list_all():
            if vnet.id and is_hub(vnet):
                hub = hub_network_from_id(vnet.id)
                log.info("Discovered hub network %s in subscription %s", hub.name, self.subscription_id)
                return hub
        log.info("No virtual network tagged %s=%s in %s", HUB_ROLE_TAG, HUB_ROLE_TAG_VALUE, self.subscription_id)
        return None
