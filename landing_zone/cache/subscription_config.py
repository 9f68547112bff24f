# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from logging import getLogger
from pathlib import Path
from typing import Any

# 3p
from yaml import YAMLError, safe_load

# project
from cache.common import first_schema_error
from tasks.common import get_billing_scope
from tasks.errors import ConfigConflict, ConfigValidationError, MissingField
from tasks.specs import ResourceGroupSpec, SubnetSpec, SubscriptionSpec, VirtualNetworkSpec, Workload

log = getLogger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")
BILLING_FIELDS = ("billing_account_name", "billing_profile_name", "invoice_section_name")

STRING_MAP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "propertyNames": {"type": "string"},
    "additionalProperties": {"type": "string"},
}

SUBNET_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "address_prefix": {"type": "string", "minLength": 1},
    },
    "required": ["name", "address_prefix"],
}

VIRTUAL_NETWORK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "resource_group_name": {"type": "string", "minLength": 1},
        "address_space": {"type": "array", "items": {"type": "string"}, "minItems": 1},
        "subnets": {"type": "array", "items": SUBNET_SCHEMA},
        "hub_peering_enabled": {"type": "boolean"},
        "use_hub_gateway": {"type": "boolean"},
        "location": {"type": "string"},
    },
    "required": ["name", "resource_group_name", "address_space"],
}

RESOURCE_GROUP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "location": {"type": "string"},
        "tags": STRING_MAP_SCHEMA,
    },
    "required": ["name"],
}

SUBSCRIPTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "display_name": {"type": "string", "minLength": 1},
        "workload": {"enum": [w.value for w in Workload]},
        "management_group_id": {"type": "string", "minLength": 1},
        "location": {"type": "string"},
        "tags": STRING_MAP_SCHEMA,
        "resource_groups": {
            "type": "object",
            "propertyNames": {"type": "string"},
            "additionalProperties": RESOURCE_GROUP_SCHEMA,
        },
        "virtual_network": VIRTUAL_NETWORK_SCHEMA,
    },
    "required": ["display_name", "management_group_id"],
}

CONFIG_DOCUMENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "billing": {
            "type": "object",
            "properties": {name: {"type": "string"} for name in BILLING_FIELDS},
            "additionalProperties": False,
        },
        "subscriptions": {
            "type": "object",
            "propertyNames": {"type": "string"},
            "additionalProperties": SUBSCRIPTION_SCHEMA,
        },
    },
    "required": ["subscriptions"],
}


def resolve_billing_scope(billing: dict[str, str] | None, source: str) -> str | None:
    """A billing scope needs all three billing inputs, none means existing subscriptions are adopted as-is"""
    billing = {k: v for k, v in (billing or {}).items() if v}
    if not billing:
        return None
    if missing := [name for name in BILLING_FIELDS if name not in billing]:
        raise MissingField(", ".join(missing), f"{source} billing")
    return get_billing_scope(*(billing[name] for name in BILLING_FIELDS))


def validate_document(document: Any, source: str) -> None:
    error = first_schema_error(document, CONFIG_DOCUMENT_SCHEMA)
    if error is None:
        return
    path = ".".join(str(p) for p in error.absolute_path)
    location = f"{source}:{path}" if path else source
    if error.validator == "required" and isinstance(error.instance, dict):
        missing = [f for f in error.validator_value if f not in error.instance]
        raise MissingField(missing[0], location)
    if error.validator == "minLength" and error.absolute_path:
        raise MissingField(str(error.absolute_path[-1]), location)
    raise ConfigValidationError(f"{location}: {error.message}")


def parse_resource_group(subscription_key: str, rg_key: str, raw: dict[str, Any]) -> ResourceGroupSpec:
    if raw.get("tags"):
        log.warning(
            "Ignoring tags on %s.resource_groups.%s, resource groups always receive their subscription's tags",
            subscription_key,
            rg_key,
        )
    return ResourceGroupSpec(name=raw["name"], location=raw.get("location"))


def parse_subscription(key: str, raw: dict[str, Any], billing_scope: str | None) -> SubscriptionSpec:
    virtual_network = None
    if raw_vnet := raw.get("virtual_network"):
        virtual_network = VirtualNetworkSpec(
            name=raw_vnet["name"],
            resource_group_name=raw_vnet["resource_group_name"],
            address_space=tuple(raw_vnet["address_space"]),
            subnets=tuple(SubnetSpec(s["name"], s["address_prefix"]) for s in raw_vnet.get("subnets") or []),
            hub_peering_enabled=raw_vnet.get("hub_peering_enabled", False),
            use_hub_gateway=raw_vnet.get("use_hub_gateway", False),
            location=raw_vnet.get("location"),
        )
    return SubscriptionSpec(
        key=key,
        display_name=raw["display_name"],
        management_group_id=raw["management_group_id"],
        workload=Workload(raw.get("workload", Workload.PRODUCTION.value)),
        tags=dict(raw.get("tags") or {}),
        resource_groups={
            rg_key: parse_resource_group(key, rg_key, rg) for rg_key, rg in (raw.get("resource_groups") or {}).items()
        },
        virtual_network=virtual_network,
        location=raw.get("location"),
        billing_scope=billing_scope,
    )


def parse_config_document(content: str, source: str) -> dict[str, SubscriptionSpec]:
    try:
        document = safe_load(content)
    except YAMLError as e:
        raise ConfigValidationError(f"{source}: invalid YAML: {e}") from e
    if not document:
        log.warning("Configuration file %s is empty, skipping", source)
        return {}
    validate_document(document, source)
    billing_scope = resolve_billing_scope(document.get("billing"), source)
    return {
        key: parse_subscription(key, raw, billing_scope) for key, raw in (document["subscriptions"] or {}).items()
    }


def config_files(path: Path) -> list[Path]:
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix in YAML_SUFFIXES and p.is_file())
    return [path]


def load_subscription_specs(path: str | Path) -> dict[str, SubscriptionSpec]:
    """Load every subscription definition under `path` (a YAML file or a directory of them), sorted by key"""
    specs: dict[str, SubscriptionSpec] = {}
    sources: dict[str, str] = {}
    for file in config_files(Path(path)):
        source = str(file)
        for key, spec in parse_config_document(file.read_text(), source).items():
            if key in specs:
                raise ConfigConflict(key, sources[key], source)
            specs[key] = spec
            sources[key] = source
    log.info("Loaded %s subscription definitions from %s", len(specs), path)
    return dict(sorted(specs.items()))
