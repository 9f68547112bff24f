# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

"""Dependency graph of the resources to provision.

Edges are not declared in configuration, they follow from how Azure resources nest:

    Subscription -> RoleAssignment -> ManagementGroupAssociation
    Subscription, RoleAssignment -> ResourceGroup
    Subscription, RoleAssignment -> ProviderRegistration(Microsoft.Network)
    ResourceGroup, Subscription, ProviderRegistration -> VirtualNetwork
    VirtualNetwork -> Subnet
    VirtualNetwork -> Peering(spoke -> hub), Peering(hub -> spoke)
"""

# stdlib
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from logging import getLogger
from typing import Any, Final, Literal, cast

# project
from tasks.common import (
    NETWORK_PROVIDER_NAMESPACE,
    get_peering_name,
    get_role_assignment_name,
)
from tasks.errors import ConfigConflict, GraphCycle, MissingField, UnsatisfiableGraph
from tasks.flattener import FlattenedResources
from tasks.specs import HubNetwork, SubscriptionSpec

log = getLogger(__name__)


class NodeKind(Enum):
    # definition order is the tie-break priority when planning
    SUBSCRIPTION = "subscription"
    ROLE_ASSIGNMENT = "role_assignment"
    MANAGEMENT_GROUP_ASSOCIATION = "management_group_association"
    RESOURCE_GROUP = "resource_group"
    PROVIDER_REGISTRATION = "provider_registration"
    VIRTUAL_NETWORK = "virtual_network"
    SUBNET = "subnet"
    PEERING = "peering"


KIND_PRIORITY: Final = {kind: priority for priority, kind in enumerate(NodeKind)}


class ExecutionContext(Enum):
    TENANT = "tenant"
    "tenant wide operations, not bound to a subscription"
    SUBSCRIPTION = "subscription"
    "the spoke subscription the resource belongs to"
    CONNECTIVITY = "connectivity"
    "the subscription owning the hub network"


RefAttribute = Literal["id", "subscription_id"]


@dataclass(frozen=True)
class Ref:
    """A payload value only known once `node_id` has been applied"""

    node_id: str
    attribute: RefAttribute = "id"


def node_id(kind: NodeKind, key: str) -> str:
    return f"{kind.value}/{key}"


@dataclass(frozen=True, eq=False)
class ResourceNode:
    kind: NodeKind
    key: str
    payload: Mapping[str, Any]
    dependencies: frozenset[str] = frozenset()
    context: ExecutionContext = ExecutionContext.SUBSCRIPTION

    @property
    def id(self) -> str:
        return node_id(self.kind, self.key)

    @property
    def sort_key(self) -> tuple[int, str]:
        return KIND_PRIORITY[self.kind], self.key

    def refs(self) -> Iterator[Ref]:
        return (v for v in self.payload.values() if isinstance(v, Ref))


@dataclass
class ResourceGraph:
    nodes: dict[str, ResourceNode] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __getitem__(self, node_id: str) -> ResourceNode:
        return self.nodes[node_id]

    def add(self, node: ResourceNode) -> ResourceNode:
        if node.id in self.nodes:
            raise ConfigConflict(node.id, f"{node.kind.value} {node.key}", f"{node.kind.value} {node.key}")
        self.nodes[node.id] = node
        return node

    def add_dependency(self, dependent: str, dependency: str) -> None:
        """Add an extra edge on top of the fixed templates"""
        node = self.nodes[dependent]
        self.nodes[dependent] = ResourceNode(
            node.kind, node.key, node.payload, node.dependencies | {dependency}, node.context
        )

    def dependents(self, node_id: str) -> list[str]:
        return sorted(n.id for n in self.nodes.values() if node_id in n.dependencies)

    def validate(self) -> None:
        """Check that every dependency and payload reference resolves and that the graph is acyclic"""
        for node in self.nodes.values():
            for dependency in sorted(node.dependencies):
                if dependency not in self.nodes:
                    raise UnsatisfiableGraph(dependency, node.id)
            for ref in node.refs():
                if ref.node_id not in node.dependencies:
                    raise UnsatisfiableGraph(ref.node_id, node.id)
        if cycle := find_cycle(self.nodes):
            raise GraphCycle(cycle)


def find_cycle(nodes: Mapping[str, ResourceNode]) -> list[str] | None:
    """Depth first search returning the first cycle found as a closed path, or None"""
    visiting: list[str] = []
    done: set[str] = set()

    def visit(current: str) -> list[str] | None:
        if current in done or current not in nodes:
            return None
        if current in visiting:
            return visiting[visiting.index(current) :] + [current]
        visiting.append(current)
        for dependency in sorted(nodes[current].dependencies):
            if cycle := visit(dependency):
                return cycle
        visiting.pop()
        done.add(current)
        return None

    for start in sorted(nodes):
        if cycle := visit(start):
            return cycle
    return None


class DependencyGraphBuilder:
    def __init__(
        self,
        subscriptions: Mapping[str, SubscriptionSpec],
        resources: FlattenedResources,
        hub: HubNetwork | None,
        principal_id: str,
        role_definition_id: str,
    ) -> None:
        self.subscriptions = subscriptions
        self.resources = resources
        self.hub = hub
        self.principal_id = principal_id
        self.role_definition_id = role_definition_id
        self.graph = ResourceGraph()

    def build(self, extra_dependencies: Iterable[tuple[str, str]] = ()) -> ResourceGraph:
        hub = self.hub
        if self.resources.peerings and hub is None:
            raise MissingField("hub_network", f"peering for {', '.join(sorted(self.resources.peerings))}")

        for key in sorted(self.subscriptions):
            self.add_subscription(self.subscriptions[key])
        for rg_key in sorted(self.resources.resource_groups):
            self.add_resource_group(rg_key)
        for sub_key in sorted(self.resources.virtual_networks):
            self.add_virtual_network(sub_key)
        for subnet_key in sorted(self.resources.subnets):
            self.add_subnet(subnet_key)
        for sub_key in sorted(self.resources.peerings):
            self.add_peerings(sub_key, cast(HubNetwork, hub))

        for dependent, dependency in extra_dependencies:
            if dependent not in self.graph:
                raise UnsatisfiableGraph(dependent, f"dependency override on {dependency}")
            self.graph.add_dependency(dependent, dependency)

        self.graph.validate()
        log.info("Built dependency graph with %s nodes for %s subscriptions", len(self.graph), len(self.subscriptions))
        return self.graph

    def add_subscription(self, sub: SubscriptionSpec) -> None:
        subscription = self.graph.add(
            ResourceNode(
                NodeKind.SUBSCRIPTION,
                sub.key,
                {
                    "alias": sub.key,
                    "display_name": sub.display_name,
                    "workload": sub.workload.value,
                    "billing_scope": sub.billing_scope,
                    "management_group_id": sub.management_group_id,
                    "tags": dict(sub.tags),
                },
                context=ExecutionContext.TENANT,
            )
        )
        role_assignment = self.graph.add(
            ResourceNode(
                NodeKind.ROLE_ASSIGNMENT,
                sub.key,
                {
                    "name": get_role_assignment_name(sub.key, self.role_definition_id, self.principal_id),
                    "subscription_id": Ref(subscription.id, "subscription_id"),
                    "role_definition_id": self.role_definition_id,
                    "principal_id": self.principal_id,
                },
                frozenset({subscription.id}),
            )
        )
        self.graph.add(
            ResourceNode(
                NodeKind.MANAGEMENT_GROUP_ASSOCIATION,
                sub.key,
                {
                    "management_group_id": sub.management_group_id,
                    "subscription_id": Ref(subscription.id, "subscription_id"),
                },
                frozenset({subscription.id, role_assignment.id}),
                ExecutionContext.TENANT,
            )
        )
        if sub.key in self.resources.virtual_networks:
            self.graph.add(
                ResourceNode(
                    NodeKind.PROVIDER_REGISTRATION,
                    sub.key,
                    {
                        "namespace": NETWORK_PROVIDER_NAMESPACE,
                        "subscription_id": Ref(subscription.id, "subscription_id"),
                    },
                    frozenset({subscription.id, role_assignment.id}),
                )
            )

    def add_resource_group(self, rg_key: str) -> None:
        rg = self.resources.resource_groups[rg_key]
        subscription = node_id(NodeKind.SUBSCRIPTION, rg.subscription_key)
        self.graph.add(
            ResourceNode(
                NodeKind.RESOURCE_GROUP,
                rg_key,
                {
                    "name": rg.name,
                    "location": rg.location,
                    "tags": dict(rg.tags),
                    "subscription_id": Ref(subscription, "subscription_id"),
                },
                frozenset({subscription, node_id(NodeKind.ROLE_ASSIGNMENT, rg.subscription_key)}),
            )
        )

    def add_virtual_network(self, sub_key: str) -> None:
        vnet = self.resources.virtual_networks[sub_key]
        subscription = node_id(NodeKind.SUBSCRIPTION, sub_key)
        dependencies = {subscription, node_id(NodeKind.PROVIDER_REGISTRATION, sub_key)}
        # a declared resource group with the same name must exist first,
        # otherwise the virtual network's resource group is ensured along with it
        dependencies.update(
            node_id(NodeKind.RESOURCE_GROUP, rg_key)
            for rg_key, rg in self.resources.resource_groups.items()
            if rg.subscription_key == sub_key and rg.name == vnet.resource_group_name
        )
        self.graph.add(
            ResourceNode(
                NodeKind.VIRTUAL_NETWORK,
                sub_key,
                {
                    "name": vnet.name,
                    "resource_group": vnet.resource_group_name,
                    "location": vnet.location,
                    "address_space": list(vnet.address_space),
                    "tags": dict(vnet.tags),
                    "subscription_id": Ref(subscription, "subscription_id"),
                },
                frozenset(dependencies),
            )
        )

    def add_subnet(self, subnet_key: str) -> None:
        subnet = self.resources.subnets[subnet_key]
        vnet = node_id(NodeKind.VIRTUAL_NETWORK, subnet.subscription_key)
        self.graph.add(
            ResourceNode(
                NodeKind.SUBNET,
                subnet_key,
                {
                    "name": subnet.name,
                    "virtual_network": subnet.virtual_network_name,
                    "resource_group": subnet.resource_group_name,
                    "address_prefix": subnet.address_prefix,
                    "subscription_id": Ref(vnet, "subscription_id"),
                },
                frozenset({vnet}),
            )
        )

    def add_peerings(self, sub_key: str, hub: HubNetwork) -> None:
        pair = self.resources.peerings[sub_key]
        vnet = node_id(NodeKind.VIRTUAL_NETWORK, sub_key)
        self.graph.add(
            ResourceNode(
                NodeKind.PEERING,
                f"{sub_key}-spoke-to-hub",
                {
                    "name": get_peering_name(pair.virtual_network_name, hub.name),
                    "virtual_network": pair.virtual_network_name,
                    "resource_group": pair.resource_group_name,
                    "subscription_id": Ref(vnet, "subscription_id"),
                    "remote_virtual_network_id": hub.resource_id,
                    "allow_virtual_network_access": True,
                    "allow_forwarded_traffic": True,
                    "allow_gateway_transit": False,
                    "use_remote_gateways": pair.use_hub_gateway,
                },
                frozenset({vnet}),
            )
        )
        self.graph.add(
            ResourceNode(
                NodeKind.PEERING,
                f"{sub_key}-hub-to-spoke",
                {
                    "name": get_peering_name(hub.name, sub_key),
                    "virtual_network": hub.name,
                    "resource_group": hub.resource_group,
                    "subscription_id": hub.subscription_id,
                    "remote_virtual_network_id": Ref(vnet, "id"),
                    "allow_virtual_network_access": True,
                    "allow_forwarded_traffic": True,
                    "allow_gateway_transit": pair.use_hub_gateway,
                    "use_remote_gateways": False,
                },
                frozenset({vnet}),
                ExecutionContext.CONNECTIVITY,
            )
        )
