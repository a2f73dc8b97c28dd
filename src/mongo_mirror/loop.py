# src/mongo_mirror/loop.py
"""
The pull, apply, commit cycle at the heart of the replicator.

A single `SyncLoop` owns the checkpoint. Each cycle pulls a batch from the
active cursor strategy, applies it to the target, durably persists the
checkpoint of the applied prefix and refreshes the health file before the
next batch is pulled. A stop request is honored between cycles: an
in-flight source pull is abandoned, but a batch that reached the target
is always checkpointed first.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from mongo_mirror.backoff import Backoff
from mongo_mirror.checkpoint import CheckpointStore
from mongo_mirror.config import AppConfig, SyncMode
from mongo_mirror.exceptions import MirrorError, is_retryable
from mongo_mirror.health import HealthReporter
from mongo_mirror.models import BatchItem, Checkpoint, CursorStrategy
from mongo_mirror.writer import BatchWriter, WriteOutcome

logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    """
    Counters for one replication run.

    Attributes:
        batches (int): Batches that applied at least one item.
        applied (int): Items applied to the target.
        deleted (int): Deletes among the applied items.
        empty_polls (int): Pulls that returned nothing.
        retryable_errors (int): Transient source or target failures.
    """

    batches: int = 0
    applied: int = 0
    deleted: int = 0
    empty_polls: int = 0
    retryable_errors: int = 0


class SyncLoop:
    """Drives one cursor strategy into one target until stopped."""

    def __init__(
        self,
        strategy: CursorStrategy,
        writer: BatchWriter,
        app_config: AppConfig,
        shutdown_event: asyncio.Event,
        checkpoint_store: Optional[CheckpointStore] = None,
        health: Optional[HealthReporter] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> None:
        """
        Initializes the loop.

        Args:
            strategy (CursorStrategy): The active source cursor.
            writer (BatchWriter): Applies batches to the target.
            app_config (AppConfig): Run settings (limit, mode, backoff).
            shutdown_event (asyncio.Event): Set to stop between cycles.
            checkpoint_store (CheckpointStore, optional): Durable checkpoint
                storage. None keeps progress in memory only.
            health (HealthReporter, optional): Heartbeat after each commit.
            checkpoint (Checkpoint, optional): The starting position.
        """
        self._strategy: CursorStrategy = strategy
        self._writer: BatchWriter = writer
        self._limit: int = app_config.batch_limit
        self._backoff_when_idle: bool = app_config.mode is SyncMode.FIELD
        self._shutdown_event: asyncio.Event = shutdown_event
        self._checkpoint_store: Optional[CheckpointStore] = checkpoint_store
        self._health: HealthReporter = health or HealthReporter(None)
        self._backoff: Backoff = Backoff(
            app_config.backoff_base_s, app_config.backoff_max_s
        )
        self.checkpoint: Optional[Checkpoint] = checkpoint
        self.stats: SyncStats = SyncStats()

    async def run(self) -> SyncStats:
        """
        Runs cycles until shutdown is requested or a fatal error occurs.

        Returns:
            SyncStats: The counters for the run.

        Raises:
            MirrorError: On fatal conditions such as an expired resume token,
                a checkpoint mismatch or an unwritable checkpoint file.
        """
        logger.info(f"Starting {self._strategy.name} replication loop.")
        try:
            while not self._shutdown_event.is_set():
                await self.run_once()
        except MirrorError:
            logger.error(
                f"Fatal error in {self._strategy.name} replication; "
                f"last committed checkpoint: {self.checkpoint}"
            )
            raise
        finally:
            logger.info(
                f"Replication stopped after {self.stats.batches} batches: "
                f"{self.stats.applied} applied ({self.stats.deleted} deletes), "
                f"{self.stats.empty_polls} empty polls, "
                f"{self.stats.retryable_errors} retryable errors."
            )
        return self.stats

    async def run_once(self) -> int:
        """
        Executes a single pull, apply, commit cycle.

        Returns:
            int: The number of items applied in this cycle.
        """
        try:
            batch: Optional[Sequence[BatchItem]] = await self._pull()
        except MirrorError:
            raise
        except Exception as e:
            if not is_retryable(e):
                raise
            await self._strategy.reset()
            await self._retry_later(f"Source read failed: {e}")
            return 0

        if batch is None:
            return 0
        if not batch:
            self.stats.empty_polls += 1
            if self._backoff_when_idle:
                delay: float = self._backoff.next_delay()
                logger.debug(f"No new documents. Sleeping for {delay:.0f}s...")
                await self._sleep(delay)
            return 0

        outcome: WriteOutcome = await self._writer.apply(batch)
        if outcome.applied > 0:
            self._commit(batch[outcome.applied - 1].checkpoint)
            self._backoff.reset()
            self.stats.batches += 1
            self.stats.applied += outcome.applied
            self.stats.deleted += outcome.deleted
            logger.info(
                f"Applied {outcome.applied}/{len(batch)} changes "
                f"({outcome.deleted} deletes) via {self._writer.capability.value} "
                "writes."
            )
        if outcome.error is not None:
            if outcome.applied == 0:
                await self._strategy.reset()
            await self._retry_later(
                f"Target write stopped after {outcome.applied} of {len(batch)} "
                f"changes: {outcome.error}",
                transient=is_retryable(outcome.error),
            )
        return outcome.applied

    async def _pull(self) -> Optional[Sequence[BatchItem]]:
        """
        Pulls the next batch, abandoning the pull if shutdown is requested.

        Returns:
            Sequence[BatchItem], optional: The batch, or None on shutdown.
        """
        pull_task: asyncio.Task = asyncio.create_task(
            self._strategy.next(self._limit)
        )
        shutdown_task: asyncio.Task = asyncio.create_task(self._shutdown_event.wait())
        done, _ = await asyncio.wait(
            {pull_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
        )
        shutdown_task.cancel()
        if pull_task in done:
            return pull_task.result()

        logger.warning("Shutdown requested, abandoning in-flight source read.")
        pull_task.cancel()
        await asyncio.gather(pull_task, return_exceptions=True)
        await self._strategy.reset()
        return None

    def _commit(self, checkpoint: Checkpoint) -> None:
        """
        Persists an applied position, then advances the strategy to it.

        Args:
            checkpoint (Checkpoint): The checkpoint of the last applied item.
        """
        if self._checkpoint_store is not None:
            self._checkpoint_store.persist(checkpoint)
        self._strategy.commit(checkpoint)
        self.checkpoint = checkpoint
        self._health.beat()

    async def _retry_later(self, message: str, transient: bool = True) -> None:
        self.stats.retryable_errors += 1
        delay: float = self._backoff.next_delay()
        log_level: int = logging.WARNING if transient else logging.ERROR
        logger.log(log_level, f"{message}. Retrying in {delay:.0f}s.")
        await self._sleep(delay)

    async def _sleep(self, delay: float) -> None:
        """Sleeps for `delay` seconds, waking early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
