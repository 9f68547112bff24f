# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tasks.applier import Ledger


class LandingZoneError(Exception):
    pass


# Configuration errors, raised before any graph is built


class ConfigConflict(LandingZoneError):
    def __init__(self, key: str, *sources: str) -> None:
        self.key = key
        self.sources = sources
        super().__init__(f"Conflicting definitions for {key!r}: {', '.join(sources)}")


class MissingField(LandingZoneError):
    def __init__(self, field: str, owner: str = "") -> None:
        self.field = field
        self.owner = owner
        super().__init__(f"Missing required field {field!r}" + (f" in {owner}" if owner else ""))


class ConfigValidationError(LandingZoneError):
    pass


# Graph assembly errors, raised before any cloud mutation


class GraphCycle(LandingZoneError):
    def __init__(self, cycle: Iterable[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


class UnsatisfiableGraph(LandingZoneError):
    def __init__(self, missing: str, referrer: str) -> None:
        self.missing = missing
        self.referrer = referrer
        super().__init__(f"{referrer} depends on {missing}, which is not part of the graph")


# Cloud errors, scoped to a single node


class CloudError(LandingZoneError):
    pass


class TransientCloudError(CloudError):
    """Throttling, server errors or a parent resource that is not visible yet. Safe to retry."""


class CloudPolicyError(CloudError):
    """The control plane refused the operation (authorization, policy). Not retried."""


class CloudValidationError(CloudError):
    """The desired state is invalid (bad CIDR, duplicate alias, missing billing scope). Not retried."""


class UnresolvedReference(CloudError):
    def __init__(self, node_id: str, attribute: str) -> None:
        super().__init__(f"Cannot resolve {attribute} of {node_id}, it has not been applied")


# Run level


class PartialApply(LandingZoneError):
    def __init__(self, ledger: "Ledger") -> None:
        self.ledger = ledger
        self.failed = ledger.node_ids_with_status("failed")
        self.skipped = ledger.node_ids_with_status("skipped")
        self.succeeded = ledger.node_ids_with_status("applied")
        super().__init__(
            f"{len(self.failed)} node(s) failed, {len(self.skipped)} skipped, {len(self.succeeded)} applied. "
            f"Failed: {', '.join(self.failed)}"
        )
