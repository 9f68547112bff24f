# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from collections.abc import Callable
from json import JSONDecodeError, loads
from logging import DEBUG, getLogger
from typing import Any, TypeVar

# 3p
from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob.aio import BlobClient, StorageStreamDownloader
from jsonschema import Draft202012Validator, ValidationError, validate

from cache.env import STORAGE_CONNECTION_SETTING, get_config_option

log = getLogger(__name__)
log.setLevel(DEBUG)

T = TypeVar("T")

BLOB_STORAGE_CACHE = "landing-zone-cache"


class InvalidCacheError(Exception):
    pass


async def read_cache(blob_name: str) -> str:
    async with BlobClient.from_connection_string(
        get_config_option(STORAGE_CONNECTION_SETTING), BLOB_STORAGE_CACHE, blob_name
    ) as blob_client:
        try:
            blob: StorageStreamDownloader[bytes] = await blob_client.download_blob()
        except ResourceNotFoundError:
            return ""
        return (await blob.readall()).decode()


async def write_cache(blob_name: str, content: str) -> None:
    async with BlobClient.from_connection_string(
        get_config_option(STORAGE_CONNECTION_SETTING), BLOB_STORAGE_CACHE, blob_name
    ) as blob_client:
        await blob_client.upload_blob(content, overwrite=True)


def first_schema_error(instance: Any, schema: dict[str, Any]) -> ValidationError | None:
    """Return the first schema violation in document order, or None if `instance` is valid"""
    errors = sorted(Draft202012Validator(schema).iter_errors(instance), key=lambda e: e.json_path)
    return errors[0] if errors else None


def deserialize_cache(
    cache_str: str, schema: dict[str, Any], post_processing: Callable[[T], T | None] = lambda x: x
) -> T | None:
    try:
        cache = loads(cache_str)
        validate(instance=cache, schema=schema)
        return post_processing(cache)
    except (JSONDecodeError, ValidationError):
        return None
