# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.
#
# This product includes software developed at Datadog (https://www.datadoghq.com/  Copyright 2025 Datadog, Inc.

# stdlib
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Final
from uuid import NAMESPACE_URL, uuid5

# 3p
from azure.mgmt.core.tools import parse_resource_id

NETWORK_PROVIDER_NAMESPACE: Final = "Microsoft.Network"
HUB_ROLE_TAG: Final = "landing-zone-role"
HUB_ROLE_TAG_VALUE: Final = "hub"

IGNORED_DRIFT_FIELDS: Final = frozenset({"tags"})
"""Tags may be edited by hand once a resource exists, we never fight those edits"""


def get_subscription_id(subscription_id: str) -> str:
    return f"/subscriptions/{subscription_id}"


def get_resource_group_id(subscription_id: str, resource_group: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"


def get_virtual_network_id(subscription_id: str, resource_group: str, vnet_name: str) -> str:
    return (
        get_resource_group_id(subscription_id, resource_group)
        + "/providers/Microsoft.Network/virtualNetworks/"
        + vnet_name
    )


def get_role_definition_id(subscription_id: str, role_definition: str) -> str:
    return get_subscription_id(subscription_id) + "/providers/Microsoft.Authorization/roleDefinitions/" + role_definition


def get_billing_scope(billing_account: str, billing_profile: str, invoice_section: str) -> str:
    return (
        f"/providers/Microsoft.Billing/billingAccounts/{billing_account}"
        f"/billingProfiles/{billing_profile}/invoiceSections/{invoice_section}"
    )


def get_peering_name(local_vnet: str, remote_vnet: str) -> str:
    return f"{local_vnet}-to-{remote_vnet}"


def get_role_assignment_name(subscription_key: str, role_definition: str, principal_id: str) -> str:
    """Deterministic role assignment name (a UUID), so re-runs target the same assignment"""
    return str(uuid5(NAMESPACE_URL, f"landing-zone/{subscription_key}/{role_definition}/{principal_id}"))


def subscription_id_of(resource_id: str) -> str:
    """Extract the subscription GUID from any ARM resource id"""
    return parse_resource_id(resource_id)["subscription"]


def diverged_fields(
    existing: Mapping[str, Any], desired: Mapping[str, Any], ignored: Iterable[str] = IGNORED_DRIFT_FIELDS
) -> set[str]:
    """Return the desired fields whose value differs from the existing resource, ignoring `ignored`"""
    ignored = set(ignored)
    return {k for k, v in desired.items() if k not in ignored and normalize(existing.get(k)) != normalize(v)}


def normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.casefold()
    if isinstance(value, list | tuple):
        return [normalize(v) for v in value]
    if isinstance(value, Mapping):
        return {k: normalize(v) for k, v in value.items()}
    return value


def now() -> str:
    """Return the current time in ISO format"""
    return datetime.now().isoformat()

