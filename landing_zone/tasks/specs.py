# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Final

DEFAULT_LOCATION: Final = "japaneast"


class Workload(Enum):
    PRODUCTION = "Production"
    DEV_TEST = "DevTest"


@dataclass(frozen=True)
class SubnetSpec:
    name: str
    address_prefix: str


@dataclass(frozen=True)
class VirtualNetworkSpec:
    name: str
    resource_group_name: str
    address_space: tuple[str, ...]
    subnets: tuple[SubnetSpec, ...] = ()
    hub_peering_enabled: bool = False
    use_hub_gateway: bool = False
    location: str | None = None


@dataclass(frozen=True)
class ResourceGroupSpec:
    name: str
    location: str | None = None


@dataclass(frozen=True)
class SubscriptionSpec:
    key: str
    "unique alias of the subscription"
    display_name: str
    management_group_id: str
    workload: Workload = Workload.PRODUCTION
    tags: Mapping[str, str] = field(default_factory=dict)
    resource_groups: Mapping[str, ResourceGroupSpec] = field(default_factory=dict)
    virtual_network: VirtualNetworkSpec | None = None
    location: str | None = None
    billing_scope: str | None = None


@dataclass(frozen=True)
class HubNetwork:
    """The connectivity subscription's hub virtual network which spokes peer with"""

    resource_id: str
    name: str
    resource_group: str
    subscription_id: str
