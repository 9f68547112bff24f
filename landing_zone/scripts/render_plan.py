#!/usr/bin/env python3
"""
Script which prints the provisioning plan for a landing zone configuration
without touching any cloud resources. Useful to review the ordering of a
change before the provisioning task applies it.
"""

# stdlib
import argparse
from json import dumps
from logging import INFO, basicConfig, getLogger
from typing import Any

# project
from cache.env import OWNER_ROLE_DEFINITION_ID
from cache.subscription_config import load_subscription_specs
from tasks.client.hub_network_client import hub_network_from_id
from tasks.errors import LandingZoneError
from tasks.flattener import flatten
from tasks.graph import DependencyGraphBuilder, Ref
from tasks.planner import Plan, plan
from tasks.specs import DEFAULT_LOCATION

log = getLogger(__name__)

PLACEHOLDER_PRINCIPAL_ID = "00000000-0000-0000-0000-000000000000"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Render the provisioning plan for a landing zone configuration")
    parser.add_argument("config", help="Path to a YAML configuration file or a directory of them")
    parser.add_argument("--hub-id", help="Resource id of the hub virtual network spokes peer with")
    parser.add_argument(
        "--principal-id",
        default=PLACEHOLDER_PRINCIPAL_ID,
        help="Object id of the principal granted the role on every subscription",
    )
    parser.add_argument("--role-definition-id", default=OWNER_ROLE_DEFINITION_ID, help="Role definition to assign")
    parser.add_argument("--location", default=DEFAULT_LOCATION, help="Location for resources which do not set one")
    parser.add_argument("--json", action="store_true", help="Print the plan as JSON instead of text")
    return parser.parse_args(argv)


def serialize_value(value: Any) -> Any:
    if isinstance(value, Ref):
        return {"ref": value.node_id, "attribute": value.attribute}
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def plan_to_json(provisioning_plan: Plan) -> list[list[dict[str, Any]]]:
    return [
        [
            {
                "id": node.id,
                "context": node.context.value,
                "dependencies": sorted(node.dependencies),
                "payload": serialize_value(dict(node.payload)),
            }
            for node in batch
        ]
        for batch in provisioning_plan
    ]


def render_plan(args: argparse.Namespace) -> str:
    specs = load_subscription_specs(args.config)
    resources = flatten(specs, default_location=args.location)
    hub = hub_network_from_id(args.hub_id) if args.hub_id else None
    graph = DependencyGraphBuilder(specs, resources, hub, args.principal_id, args.role_definition_id).build()
    provisioning_plan = plan(graph)
    log.info("Planned %s nodes in %s batches", len(provisioning_plan.nodes()), len(provisioning_plan))
    if args.json:
        return dumps(plan_to_json(provisioning_plan), indent=2)
    return provisioning_plan.render()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        print(render_plan(args))
    except LandingZoneError as e:
        log.error("Unable to build a plan: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    basicConfig(level=INFO)
    raise SystemExit(main())
