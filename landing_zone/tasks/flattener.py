# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

"""Flattens nested subscription definitions into uniquely keyed, fully resolved resource mappings.

Location and tag inheritance is resolved here, once, so nothing downstream ever
looks at the owning subscription again:

- resource group location: `rg.location ?? subscription.location ?? default`
- virtual network location: `vnet.location ?? subscription.location ?? default`
- resource group and virtual network tags: always the subscription's tags
"""

# stdlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TypeVar

# project
from tasks.errors import ConfigConflict, MissingField
from tasks.specs import DEFAULT_LOCATION, SubscriptionSpec

T = TypeVar("T")


@dataclass(frozen=True)
class FlatResourceGroup:
    subscription_key: str
    name: str
    location: str
    tags: Mapping[str, str]


@dataclass(frozen=True)
class FlatVirtualNetwork:
    subscription_key: str
    name: str
    resource_group_name: str
    address_space: tuple[str, ...]
    location: str
    tags: Mapping[str, str]
    hub_peering_enabled: bool
    use_hub_gateway: bool


@dataclass(frozen=True)
class FlatSubnet:
    subscription_key: str
    virtual_network_name: str
    resource_group_name: str
    name: str
    address_prefix: str


@dataclass(frozen=True)
class PeeringPair:
    """Implies two peerings: spoke -> hub, and hub -> spoke applied in the connectivity subscription"""

    subscription_key: str
    virtual_network_name: str
    resource_group_name: str
    use_hub_gateway: bool


@dataclass
class FlattenedResources:
    resource_groups: dict[str, FlatResourceGroup] = field(default_factory=dict)
    "keyed by `{subscription_key}-{resource_group_key}`"
    virtual_networks: dict[str, FlatVirtualNetwork] = field(default_factory=dict)
    "keyed by subscription key, only subscriptions declaring a virtual network"
    subnets: dict[str, FlatSubnet] = field(default_factory=dict)
    "keyed by `{subscription_key}-{subnet_name}`"
    peerings: dict[str, PeeringPair] = field(default_factory=dict)
    "keyed by subscription key, only virtual networks with hub peering enabled"


def resolve_location(*candidates: str | None, default: str = DEFAULT_LOCATION) -> str:
    return next((c for c in candidates if c), default)


def add_unique(mapping: dict[str, T], key: str, value: T, sources: dict[str, str], source: str) -> None:
    """Insert `value`, raising ConfigConflict naming both sources if `key` is already taken"""
    if key in mapping:
        raise ConfigConflict(key, sources[key], source)
    mapping[key] = value
    sources[key] = source


def flatten(
    subscriptions: Mapping[str, SubscriptionSpec] | Iterable[SubscriptionSpec], default_location: str = DEFAULT_LOCATION
) -> FlattenedResources:
    if isinstance(subscriptions, Mapping):
        entries = sorted(subscriptions.items())
    else:
        entries = [(s.key, s) for s in subscriptions]
    flattened = FlattenedResources()
    subscription_aliases: dict[str, SubscriptionSpec] = {}
    alias_sources: dict[str, str] = {}
    rg_sources: dict[str, str] = {}
    subnet_sources: dict[str, str] = {}

    for source_key, sub in entries:
        if not sub.key:
            raise MissingField("key", f"subscriptions.{source_key}")
        add_unique(subscription_aliases, sub.key, sub, alias_sources, f"subscriptions.{source_key}")

    for sub in sorted(subscription_aliases.values(), key=lambda s: s.key):
        # resource group names are case insensitive in Azure
        rg_names: dict[str, str] = {}
        for rg_key, rg in sorted(sub.resource_groups.items()):
            if not rg.name:
                raise MissingField("name", f"{sub.key}.resource_groups.{rg_key}")
            rg_source = f"{sub.key}.resource_groups.{rg_key}"
            if (first_source := rg_names.setdefault(rg.name.casefold(), rg_source)) != rg_source:
                raise ConfigConflict(f"{sub.key}/{rg.name}", first_source, rg_source)
            add_unique(
                flattened.resource_groups,
                f"{sub.key}-{rg_key}",
                FlatResourceGroup(
                    subscription_key=sub.key,
                    name=rg.name,
                    location=resolve_location(rg.location, sub.location, default=default_location),
                    tags=dict(sub.tags),
                ),
                rg_sources,
                rg_source,
            )

        vnet = sub.virtual_network
        if vnet is None:
            continue
        owner = f"{sub.key}.virtual_network"
        if not vnet.name:
            raise MissingField("name", owner)
        if not vnet.resource_group_name:
            raise MissingField("resource_group_name", owner)
        if not vnet.address_space:
            raise MissingField("address_space", owner)

        flattened.virtual_networks[sub.key] = FlatVirtualNetwork(
            subscription_key=sub.key,
            name=vnet.name,
            resource_group_name=vnet.resource_group_name,
            address_space=tuple(vnet.address_space),
            location=resolve_location(vnet.location, sub.location, default=default_location),
            tags=dict(sub.tags),
            hub_peering_enabled=vnet.hub_peering_enabled,
            use_hub_gateway=vnet.use_hub_gateway,
        )

        for index, subnet in enumerate(vnet.subnets):
            subnet_owner = f"{owner}.subnets[{index}]"
            if not subnet.name:
                raise MissingField("name", subnet_owner)
            if not subnet.address_prefix:
                raise MissingField("address_prefix", subnet_owner)
            add_unique(
                flattened.subnets,
                f"{sub.key}-{subnet.name}",
                FlatSubnet(
                    subscription_key=sub.key,
                    virtual_network_name=vnet.name,
                    resource_group_name=vnet.resource_group_name,
                    name=subnet.name,
                    address_prefix=subnet.address_prefix,
                ),
                subnet_sources,
                subnet_owner,
            )

        if vnet.hub_peering_enabled:
            flattened.peerings[sub.key] = PeeringPair(
                subscription_key=sub.key,
                virtual_network_name=vnet.name,
                resource_group_name=vnet.resource_group_name,
                use_hub_gateway=vnet.use_hub_gateway,
            )

    return flattened
