# src/mongo_mirror/capability.py
"""Detection of the write strategy supported by the target deployment."""

import logging
from enum import Enum
from typing import Any, Mapping

from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError

logger: logging.Logger = logging.getLogger(__name__)

# Client-level bulk writes across namespaces arrived with MongoDB 8.0.
BULK_WRITE_MIN_MAJOR: int = 8


class TargetCapability(Enum):
    """How batches can be written to the target."""

    BULK_CAPABLE = "bulk"
    LEGACY_ONLY = "legacy"


def capability_for_version(version: str) -> TargetCapability:
    """
    Map a server version string to a write capability.

    Args:
        version (str): The server version, e.g. "8.0.4".

    Returns:
        TargetCapability: `BULK_CAPABLE` for major version 8 and above.
    """
    major: str = version.strip().split(".", 1)[0]
    if major.isdigit() and int(major) >= BULK_WRITE_MIN_MAJOR:
        return TargetCapability.BULK_CAPABLE
    return TargetCapability.LEGACY_ONLY


async def probe_capability(client: AsyncMongoClient) -> TargetCapability:
    """
    Issue a single `buildInfo` query against the target to pick a write path.

    Any failure falls back to `LEGACY_ONLY`, which works on every version.

    Args:
        client (AsyncMongoClient): A client connected to the target deployment.

    Returns:
        TargetCapability: The capability to use for the rest of the run.
    """
    try:
        build_info: Mapping[str, Any] = await client.admin.command("buildInfo")
    except PyMongoError as e:
        logger.warning(f"Target version probe failed, using per-document writes: {e}")
        return TargetCapability.LEGACY_ONLY

    version: Any = build_info.get("version")
    if not isinstance(version, str):
        logger.warning("Target did not report a version, using per-document writes.")
        return TargetCapability.LEGACY_ONLY

    capability: TargetCapability = capability_for_version(version)
    logger.info(f"Target MongoDB {version} detected: {capability.value} writes.")
    return capability
