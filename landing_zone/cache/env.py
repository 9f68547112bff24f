# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from collections.abc import Callable
from logging import getLogger
from os import environ
from typing import TypeVar

T = TypeVar("T")

log = getLogger(__name__)


# Settings
STORAGE_CONNECTION_SETTING = "AzureWebJobsStorage"
DD_SITE_SETTING = "DD_SITE"
DD_API_KEY_SETTING = "DD_API_KEY"
DD_TELEMETRY_SETTING = "DD_TELEMETRY"
LOG_LEVEL_SETTING = "LOG_LEVEL"
LANDING_ZONE_ID_SETTING = "LANDING_ZONE_ID"
LANDING_ZONE_CONFIG_PATH_SETTING = "LANDING_ZONE_CONFIG_PATH"
CONNECTIVITY_SUBSCRIPTION_ID_SETTING = "CONNECTIVITY_SUBSCRIPTION_ID"
HUB_VIRTUAL_NETWORK_ID_SETTING = "HUB_VIRTUAL_NETWORK_ID"
OWNER_PRINCIPAL_ID_SETTING = "OWNER_PRINCIPAL_ID"
ROLE_DEFINITION_ID_SETTING = "ROLE_DEFINITION_ID"
MAX_CONCURRENCY_SETTING = "MAX_CONCURRENCY"
MAX_ATTEMPTS_SETTING = "MAX_ATTEMPTS"
DEFAULT_LOCATION_SETTING = "DEFAULT_LOCATION"

# Defaults
OWNER_ROLE_DEFINITION_ID = "8e3af657-a8ff-443c-a75c-2fe8c4bcb635"
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_MAX_ATTEMPTS = 5


class MissingConfigOptionError(Exception):
    def __init__(self, option: str) -> None:
        super().__init__(f"Missing required configuration option: {option}")


def get_config_option(name: str) -> str:
    """Get a configuration option from the environment or raise a helpful error"""
    if option := environ.get(name):
        return option
    raise MissingConfigOptionError(name)


def parse_config_option(name: str, parse: Callable[[str], T | None], default: T) -> T:
    """Get a configuration option from the environment, parse it, or return a default"""
    try:
        value = environ.get(name)
        if value is None:
            return default
        result = parse(value)
        if result is None:
            log.error(f"Invalid value for configuration option {name}: {value}")
            return default
        return result
    except ValueError:
        log.error(f"Invalid value for configuration option {name}: {environ.get(name)}")
        return default


def positive_int(value: str) -> int | None:
    """Parse a strictly positive integer, None if it is zero or negative"""
    parsed = int(value)
    return parsed if parsed > 0 else None


def is_truthy(setting_name: str) -> bool:
    return environ.get(setting_name, "").lower().strip() in {"t", "true", "1", "y", "yes"}
