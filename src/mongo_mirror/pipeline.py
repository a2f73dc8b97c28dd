# src/mongo_mirror/pipeline.py
"""Wiring of the replicator: clients, checkpoint, strategy and sync loop."""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from pymongo import AsyncMongoClient

from mongo_mirror.capability import TargetCapability, probe_capability
from mongo_mirror.change_feed import ChangeStreamCursor
from mongo_mirror.checkpoint import CheckpointStore, override_checkpoint
from mongo_mirror.config import AppConfig, Config, MongoEndpointConfig, SyncMode
from mongo_mirror.exceptions import CheckpointMismatch
from mongo_mirror.field_cursor import FieldCursor
from mongo_mirror.health import HealthReporter
from mongo_mirror.loop import SyncLoop, SyncStats
from mongo_mirror.models import (
    ChangeFeedCheckpoint,
    Checkpoint,
    CursorStrategy,
    FieldCheckpoint,
)
from mongo_mirror.writer import BatchWriter

if TYPE_CHECKING:
    from pymongo.asynchronous.collection import AsyncCollection

logger: logging.Logger = logging.getLogger(__name__)


def build_strategy(
    app_config: AppConfig,
    collection: "AsyncCollection",
    checkpoint: Optional[Checkpoint],
) -> CursorStrategy:
    """
    Select the cursor strategy for the configured sync mode.

    Args:
        app_config (AppConfig): The validated run settings.
        collection (AsyncCollection): The source collection.
        checkpoint (Checkpoint, optional): The starting position.

    Returns:
        CursorStrategy: The change stream or field cursor.

    Raises:
        CheckpointMismatch: If the checkpoint belongs to the other strategy.
    """
    if app_config.mode is SyncMode.CHANGE_STREAM:
        if isinstance(checkpoint, FieldCheckpoint):
            raise CheckpointMismatch(
                "A field checkpoint cannot start a change stream run."
            )
        return ChangeStreamCursor(collection, checkpoint, app_config.max_await_ms)

    if isinstance(checkpoint, ChangeFeedCheckpoint) or not app_config.sync_field:
        raise CheckpointMismatch(
            "Field-based sync needs a sync field and a field checkpoint."
        )
    logger.info(
        f"Syncing on field '{app_config.sync_field}'. Deletes on the source "
        "are not replicated in field mode."
    )
    return FieldCursor(collection, app_config.sync_field, checkpoint)


class MirrorPipeline:
    """Orchestrates a replication run from startup to shutdown."""

    def __init__(self, config: Config, shutdown_event: asyncio.Event) -> None:
        """
        Initializes the pipeline with the given configuration.

        Args:
            config (Config): The application configuration.
            shutdown_event (asyncio.Event): Event to signal graceful shutdown.
        """
        self._config: Config = config
        self._shutdown_event: asyncio.Event = shutdown_event
        self._checkpoint_store: Optional[CheckpointStore] = None
        if config.app.checkpoint_file is not None:
            self._checkpoint_store = CheckpointStore(
                config.app.checkpoint_file, config.app.mode, config.app.sync_field
            )

    def _client(self, endpoint: MongoEndpointConfig) -> AsyncMongoClient:
        options: Dict[str, Any] = {
            "tz_aware": True,
            "appname": "mongo-mirror",
            "serverSelectionTimeoutMS": self._config.app.server_selection_timeout_ms,
        }
        return AsyncMongoClient(endpoint.uri, **options)

    def initial_checkpoint(self) -> Optional[Checkpoint]:
        """
        Resolves the starting position for this run.

        An operator override on the command line takes precedence over the
        stored checkpoint, which is then not read at all.

        Returns:
            Checkpoint, optional: The position, or None to start fresh.
        """
        override: Optional[Checkpoint] = override_checkpoint(self._config.app)
        if override is not None:
            logger.info(f"Using operator-supplied resume position {override}.")
            return override
        if self._checkpoint_store is None:
            logger.warning(
                "No checkpoint file configured; progress will not survive a restart."
            )
            return None
        return self._checkpoint_store.load()

    async def run(self) -> SyncStats:
        """
        Runs replication until shutdown or a fatal error.

        Returns:
            SyncStats: The counters of the finished run.
        """
        app = self._config.app
        checkpoint: Optional[Checkpoint] = self.initial_checkpoint()

        async with (
            self._client(self._config.source) as source_client,
            self._client(self._config.target) as target_client,
        ):
            capability: TargetCapability = await probe_capability(target_client)
            source_collection = source_client[self._config.source.database][
                self._config.source.collection
            ]
            target_collection = target_client[self._config.target.database][
                self._config.target.collection
            ]

            strategy: CursorStrategy = build_strategy(
                app, source_collection, checkpoint
            )

            loop: SyncLoop = SyncLoop(
                strategy=strategy,
                writer=BatchWriter(target_client, target_collection, capability),
                app_config=app,
                shutdown_event=self._shutdown_event,
                checkpoint_store=self._checkpoint_store,
                health=HealthReporter(app.health_file),
                checkpoint=checkpoint,
            )
            try:
                return await loop.run()
            finally:
                await strategy.close()
