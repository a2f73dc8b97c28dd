# src/mongo_mirror/change_feed.py
"""
Change-stream based cursor strategy.

Consumes the source collection's change stream, resuming from the last
committed token (or from "now" without one) and grouping consecutive
events into batches. An idle stream waits on the server for up to
`max_await_ms` per pull instead of being polled by the sync loop.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

from pymongo.errors import OperationFailure

from mongo_mirror.exceptions import (
    HISTORY_LOST_CODES,
    ChangeStreamInvalidated,
    CheckpointMismatch,
    ResumeTokenExpired,
)
from mongo_mirror.models import (
    ChangeEvent,
    ChangeFeedCheckpoint,
    Checkpoint,
    OperationType,
)

if TYPE_CHECKING:
    from pymongo.asynchronous.change_stream import AsyncChangeStream
    from pymongo.asynchronous.collection import AsyncCollection

logger: logging.Logger = logging.getLogger(__name__)

_REPLICATED_OPERATIONS: Dict[str, OperationType] = {
    op.value: op for op in OperationType
}


def to_change_event(change: Mapping[str, Any]) -> Optional[ChangeEvent]:
    """
    Convert a raw change stream document into a `ChangeEvent`.

    Args:
        change (Mapping[str, Any]): The event as returned by the driver.

    Returns:
        ChangeEvent, optional: The event, or None for operations that are not
            replicated (collection drops and renames).

    Raises:
        ChangeStreamInvalidated: On an `invalidate` event.
    """
    operation_type: str = change["operationType"]
    if operation_type == "invalidate":
        raise ChangeStreamInvalidated(
            "The source change stream was invalidated (collection dropped or "
            "renamed). Re-seed the target and restart without a checkpoint."
        )
    operation: Optional[OperationType] = _REPLICATED_OPERATIONS.get(operation_type)
    if operation is None:
        logger.warning(f"Skipping unsupported change stream event '{operation_type}'.")
        return None

    document: Optional[Dict[str, Any]] = None
    if operation is not OperationType.DELETE:
        document = change.get("fullDocument")
    return ChangeEvent(
        operation=operation,
        document_id=change["documentKey"]["_id"],
        document=document,
        token=change["_id"],
    )


class ChangeStreamCursor:
    """Pulls batches of mutations from the source change stream."""

    name: str = "change stream"

    def __init__(
        self,
        collection: "AsyncCollection",
        checkpoint: Optional[ChangeFeedCheckpoint] = None,
        max_await_ms: int = 1000,
    ) -> None:
        """
        Initializes the cursor.

        Args:
            collection (AsyncCollection): The source collection to watch.
            checkpoint (ChangeFeedCheckpoint, optional): Where to resume from.
                None starts at the current end of the stream.
            max_await_ms (int): How long one pull waits for a first event.
        """
        self._collection: "AsyncCollection" = collection
        self._token: Optional[Dict[str, Any]] = checkpoint.token if checkpoint else None
        self._max_await_ms: int = max_await_ms
        self._stream: Optional["AsyncChangeStream"] = None
        self._delivered_token: Optional[Dict[str, Any]] = None
        self._stale: bool = False

    async def _open(self) -> "AsyncChangeStream":
        options: Dict[str, Any] = {
            "full_document": "updateLookup",
            "max_await_time_ms": self._max_await_ms,
        }
        if self._token is not None:
            options["resume_after"] = self._token
            logger.info(f"Resuming change stream after token {self._token}.")
        else:
            logger.info("Opening change stream at the current time.")
        stream: "AsyncChangeStream" = await self._collection.watch(**options)
        if self._token is None:
            # Pin the start so a reopen before the first commit replays from here.
            self._token = stream.resume_token
        return stream

    async def next(self, limit: int) -> Sequence[ChangeEvent]:
        """
        Collects up to `limit` consecutive events.

        Stops early as soon as no further event is immediately available. An
        empty list means the stream stayed idle for the whole await window.

        Args:
            limit (int): Maximum number of events to return.

        Returns:
            Sequence[ChangeEvent]: The events in stream order.

        Raises:
            ResumeTokenExpired: If the resume point is no longer in the oplog.
            ChangeStreamInvalidated: If the stream was invalidated.
        """
        if self._stale:
            await self.reset()
        events: List[ChangeEvent] = []
        try:
            if self._stream is None:
                self._stream = await self._open()
            while len(events) < limit:
                change: Optional[Mapping[str, Any]] = await self._stream.try_next()
                if change is None:
                    break
                event: Optional[ChangeEvent] = to_change_event(change)
                if event is not None:
                    events.append(event)
        except OperationFailure as e:
            if e.code in HISTORY_LOST_CODES:
                raise ResumeTokenExpired(
                    f"Change stream history lost for token {self._token} "
                    f"(code {e.code}). Re-seed the target and restart without "
                    "a checkpoint."
                ) from e
            raise

        if events:
            self._delivered_token = events[-1].token
        return events

    def commit(self, checkpoint: Checkpoint) -> None:
        """
        Records an applied position.

        When only a prefix of the last batch was applied the open stream is
        ahead of the checkpoint; it is discarded and reopened on the next pull.

        Args:
            checkpoint (Checkpoint): The checkpoint of the last applied event.
        """
        if not isinstance(checkpoint, ChangeFeedCheckpoint):
            raise CheckpointMismatch(
                f"Cannot commit a '{checkpoint.kind}' checkpoint to a change stream."
            )
        self._token = checkpoint.token
        if checkpoint.token != self._delivered_token:
            self._stale = True

    async def reset(self) -> None:
        """Closes the stream so the next pull resumes from the committed token."""
        self._stale = False
        self._delivered_token = None
        if self._stream is not None:
            stream: "AsyncChangeStream" = self._stream
            self._stream = None
            await stream.close()

    async def close(self) -> None:
        await self.reset()
