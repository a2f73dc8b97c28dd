# src/mongo_mirror/field_cursor.py
"""
Field-based incremental cursor strategy.

Walks the source collection in ascending `(sync field, _id)` order, reading
the documents strictly after the committed position. The `_id` tie-break
keeps the cursor exact when many documents share one sync field value, so
batch boundaries can fall anywhere without skipping or repeating a document.

This strategy only observes documents that exist: deletions on the source
are never replicated in field mode, and documents without the sync field
(or with a null value) are never selected.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Tuple

from mongo_mirror.exceptions import CheckpointMismatch
from mongo_mirror.models import (
    Checkpoint,
    FieldCheckpoint,
    ScalarType,
    SourceRecord,
    infer_scalar_type,
)

if TYPE_CHECKING:
    from pymongo.asynchronous.collection import AsyncCollection

logger: logging.Logger = logging.getLogger(__name__)


def get_field(document: Mapping[str, Any], path: str) -> Any:
    """
    Resolve a possibly dotted field path inside a document.

    Args:
        document (Mapping[str, Any]): The document to read from.
        path (str): A field name such as `updatedAt` or `meta.version`.

    Returns:
        Any: The value, or None if any path segment is missing.
    """
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def build_range_filter(
    field: str, position: Optional[FieldCheckpoint]
) -> Dict[str, Any]:
    """
    Build the query selecting documents strictly after `position`.

    Args:
        field (str): The sync field.
        position (FieldCheckpoint, optional): The committed position. None
            selects every document carrying the field.

    Returns:
        Dict[str, Any]: A MongoDB filter document.
    """
    if position is None:
        return {} if field == "_id" else {field: {"$ne": None}}
    if field == "_id":
        return {"_id": {"$gt": position.value}}
    if position.last_id is None:
        # An override without an id re-reads the boundary value.
        return {field: {"$gte": position.value}}
    return {
        "$or": [
            {field: {"$gt": position.value}},
            {field: position.value, "_id": {"$gt": position.last_id}},
        ]
    }


def build_sort(field: str) -> List[Tuple[str, int]]:
    """
    Return the sort order matching `build_range_filter`.

    Args:
        field (str): The sync field.

    Returns:
        List[Tuple[str, int]]: Ascending `(field, _id)`, or `_id` alone.
    """
    if field == "_id":
        return [("_id", 1)]
    return [(field, 1), ("_id", 1)]


class FieldCursor:
    """Pulls batches of documents ordered by a sync field and `_id`."""

    name: str = "field"

    def __init__(
        self,
        collection: "AsyncCollection",
        field: str,
        checkpoint: Optional[FieldCheckpoint] = None,
    ) -> None:
        """
        Initializes the cursor.

        Args:
            collection (AsyncCollection): The source collection.
            field (str): The sync field name, possibly dotted.
            checkpoint (FieldCheckpoint, optional): The position to continue
                after. None starts at the beginning of the collection.
        """
        self._collection: "AsyncCollection" = collection
        self._field: str = field
        self._position: Optional[FieldCheckpoint] = checkpoint

    @property
    def position(self) -> Optional[FieldCheckpoint]:
        return self._position

    def _to_record(self, document: Dict[str, Any]) -> SourceRecord:
        doc_id: Any = document["_id"]
        value: Any = (
            doc_id if self._field == "_id" else get_field(document, self._field)
        )
        value_type: ScalarType = infer_scalar_type(value)
        id_type: ScalarType = infer_scalar_type(doc_id)
        return SourceRecord(
            id=doc_id,
            field_value=value,
            document=document,
            checkpoint=FieldCheckpoint(
                field=self._field,
                value_type=value_type,
                value=value,
                last_id=doc_id,
                id_type=id_type,
            ),
        )

    async def next(self, limit: int) -> Sequence[SourceRecord]:
        """
        Reads up to `limit` documents after the committed position.

        Args:
            limit (int): Maximum number of documents to return.

        Returns:
            Sequence[SourceRecord]: The records in ascending `(field, _id)`
                order. Empty when the source has nothing new.
        """
        query: Dict[str, Any] = build_range_filter(self._field, self._position)
        logger.debug(f"Querying source with filter {query}.")
        documents: List[Dict[str, Any]] = await self._collection.find(
            query, sort=build_sort(self._field), limit=limit
        ).to_list(length=limit)
        return [self._to_record(document) for document in documents]

    def commit(self, checkpoint: Checkpoint) -> None:
        """
        Moves the position to the last applied document.

        Args:
            checkpoint (Checkpoint): The checkpoint of the last applied record.
        """
        if not isinstance(checkpoint, FieldCheckpoint):
            raise CheckpointMismatch(
                f"Cannot commit a '{checkpoint.kind}' checkpoint to a field cursor."
            )
        self._position = checkpoint

    async def reset(self) -> None:
        # Every pull is a fresh query; nothing is held open.
        pass

    async def close(self) -> None:
        pass
