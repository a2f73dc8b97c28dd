# src/mongo_mirror/config.py
"""
Configuration for the mongo-mirror replicator.

This module centralizes all configuration, loading connection details from
environment variables and providing typed dataclasses for use throughout
the application. A `Config` is immutable for the lifetime of a run.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from mongo_mirror.exceptions import ConfigError

RESUME_TYPES = ("objectid", "date", "int", "string")


def _get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Retrieves a required environment variable.

    Args:
        name (str): The name of the environment variable.
        default (str, optional): The default value if the variable is not set.

    Returns:
        str: The value of the environment variable.
    """
    value: Optional[str] = os.environ.get(name, default)
    if not value:
        raise ConfigError(f"Environment variable '{name}' must be set.")
    return value


class SyncMode(str, Enum):
    """The two mutually exclusive replication strategies."""

    CHANGE_STREAM = "change_stream"
    FIELD = "field"


@dataclass(frozen=True)
class MongoEndpointConfig:
    """
    Represents one side of the replication: a MongoDB collection.

    Attributes:
        uri (str): The MongoDB connection string.
        database (str): The database name.
        collection (str): The collection name.
    """

    uri: str
    database: str
    collection: str


@dataclass(frozen=True)
class AppConfig:
    """
    Defines the replicator's operational parameters.

    Attributes:
        mode (SyncMode): The active replication strategy.
        sync_field (str, optional): Field driving incremental sync (field mode).
        batch_limit (int): Maximum number of documents pulled per batch.
        checkpoint_file (Path, optional): Where the checkpoint is persisted.
        health_file (Path, optional): File refreshed after every applied batch.
        resume_value (str, optional): Operator override of the start position.
        resume_type (str, optional): Declared type of `resume_value`.
        resume_id (str, optional): ObjectId tie-break for `resume_value`.
        max_await_ms (int): Upper bound on one wait for change stream events.
        backoff_base_s (float): First delay after an empty or failed poll.
        backoff_max_s (float): Ceiling for the backoff delay.
        server_selection_timeout_ms (int): Driver server selection timeout.
    """

    mode: SyncMode = SyncMode.CHANGE_STREAM
    sync_field: Optional[str] = None
    batch_limit: int = 100
    checkpoint_file: Optional[Path] = None
    health_file: Optional[Path] = None
    resume_value: Optional[str] = None
    resume_type: Optional[str] = None
    resume_id: Optional[str] = None
    max_await_ms: int = 1000
    backoff_base_s: float = 10.0
    backoff_max_s: float = 60.0
    server_selection_timeout_ms: int = 30000

    def __post_init__(self) -> None:
        """Rejects inconsistent combinations of settings."""
        if self.mode is SyncMode.FIELD and not self.sync_field:
            raise ConfigError("Field-based sync requires a sync field.")
        if self.mode is SyncMode.CHANGE_STREAM and self.sync_field:
            raise ConfigError(
                "Change stream sync and field-based sync are mutually exclusive."
            )
        if self.batch_limit <= 0:
            raise ConfigError("The batch limit must be a positive integer.")
        if self.max_await_ms <= 0:
            raise ConfigError("The change stream await time must be positive.")
        if self.backoff_base_s <= 0 or self.backoff_max_s < self.backoff_base_s:
            raise ConfigError("Backoff delays must satisfy 0 < base <= max.")
        if self.resume_value is None:
            if self.resume_type is not None or self.resume_id is not None:
                raise ConfigError("--resume-type/--resume-id require --resume-value.")
            return
        if self.mode is SyncMode.CHANGE_STREAM:
            if self.resume_type is not None or self.resume_id is not None:
                raise ConfigError(
                    "In change stream mode --resume-value is a resume token and "
                    "takes no --resume-type or --resume-id."
                )
            return
        if self.resume_type not in RESUME_TYPES:
            raise ConfigError(
                "--resume-value requires --resume-type, one of "
                f"{', '.join(RESUME_TYPES)}."
            )
        if self.resume_id is not None and self.sync_field == "_id":
            raise ConfigError("--resume-id is redundant when syncing on '_id'.")


@dataclass(frozen=True)
class Config:
    """
    Top-level configuration container for the entire application.

    Attributes:
        source (MongoEndpointConfig): The collection replicated from.
        target (MongoEndpointConfig): The collection replicated into.
        app (AppConfig): General application settings.
    """

    source: MongoEndpointConfig = field(
        default_factory=lambda: MongoEndpointConfig(
            uri=_get_env_var("MIRROR_SOURCE_URI"),
            database=_get_env_var("MIRROR_SOURCE_DB"),
            collection=_get_env_var("MIRROR_SOURCE_COLLECTION"),
        )
    )
    target: MongoEndpointConfig = field(
        default_factory=lambda: MongoEndpointConfig(
            uri=_get_env_var("MIRROR_TARGET_URI"),
            database=_get_env_var("MIRROR_TARGET_DB"),
            collection=_get_env_var("MIRROR_TARGET_COLLECTION"),
        )
    )
    app: AppConfig = field(default_factory=AppConfig)
