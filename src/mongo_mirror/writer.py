# src/mongo_mirror/writer.py
"""
Applies batches of source changes to the target collection.

Every item becomes an idempotent write keyed by `_id`: a replace-with-upsert
for documents and a delete for change stream deletions. Targets that support
client-level bulk writes receive the whole batch as one ordered request;
older targets get one request per document. Either way the writer stops at
the first failing item and reports how long the applied prefix is, so the
checkpoint never moves past a write that did not happen.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Union

from pymongo import DeleteOne, ReplaceOne
from pymongo.errors import ClientBulkWriteException, PyMongoError

from mongo_mirror.capability import TargetCapability
from mongo_mirror.models import BatchItem, ChangeEvent, OperationType, SourceRecord

if TYPE_CHECKING:
    from pymongo import AsyncMongoClient
    from pymongo.asynchronous.collection import AsyncCollection

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentWrite:
    """
    The target-side effect of one batch item.

    Attributes:
        document_id (Any): The `_id` the write is keyed on.
        replacement (Dict[str, Any], optional): The full document to upsert,
            or None to delete the document.
    """

    document_id: Any
    replacement: Optional[Dict[str, Any]]

    @property
    def is_delete(self) -> bool:
        return self.replacement is None


@dataclass(frozen=True)
class WriteOutcome:
    """
    Result of applying one batch.

    Attributes:
        applied (int): Length of the batch prefix that reached the target.
        deleted (int): Number of deletes within the applied prefix.
        error (Exception, optional): The failure that stopped the batch early.
    """

    applied: int
    deleted: int = 0
    error: Optional[Exception] = None


def plan_write(item: BatchItem) -> Optional[DocumentWrite]:
    """
    Map a batch item to its target write.

    Args:
        item (BatchItem): A change event or a field-cursor record.

    Returns:
        DocumentWrite, optional: The write, or None when the item has no
            target effect (an update whose document no longer exists).
    """
    if isinstance(item, SourceRecord):
        return DocumentWrite(document_id=item.id, replacement=item.document)
    if item.operation is OperationType.DELETE:
        return DocumentWrite(document_id=item.document_id, replacement=None)
    if item.document is None:
        logger.debug(
            f"No post-image for {item.operation.value} of {item.document_id}; "
            "a later delete event covers it."
        )
        return None
    return DocumentWrite(document_id=item.document_id, replacement=item.document)


def _first_failed_index(error: ClientBulkWriteException) -> Optional[int]:
    """
    Find the model index of the first failed write in a bulk error.

    Args:
        error (ClientBulkWriteException): The raised bulk write error.

    Returns:
        int, optional: The failing index, or None if the server did not
            attribute the failure to an individual write.
    """
    write_errors: Any = error.write_errors
    indexes: List[int] = []
    if isinstance(write_errors, Mapping):
        indexes = [int(idx) for idx in write_errors]
    elif write_errors:
        indexes = [int(err["idx"]) for err in write_errors if "idx" in err]
    return min(indexes) if indexes else None


class BatchWriter:
    """Writes batches into the target collection using the probed capability."""

    def __init__(
        self,
        client: "AsyncMongoClient",
        collection: "AsyncCollection",
        capability: TargetCapability,
    ) -> None:
        """
        Initializes the writer.

        Args:
            client (AsyncMongoClient): The target client, used for bulk writes.
            collection (AsyncCollection): The target collection.
            capability (TargetCapability): The write path to use.
        """
        self._client: "AsyncMongoClient" = client
        self._collection: "AsyncCollection" = collection
        self._capability: TargetCapability = capability
        self._namespace: str = collection.full_name

    @property
    def capability(self) -> TargetCapability:
        return self._capability

    async def apply(self, batch: Sequence[BatchItem]) -> WriteOutcome:
        """
        Applies a batch in order, stopping at the first failed write.

        Args:
            batch (Sequence[BatchItem]): The items to apply.

        Returns:
            WriteOutcome: The applied prefix length and the stopping error.
        """
        if not batch:
            return WriteOutcome(applied=0)
        writes: List[Optional[DocumentWrite]] = [plan_write(item) for item in batch]
        if self._capability is TargetCapability.BULK_CAPABLE:
            return await self._apply_bulk(writes)
        return await self._apply_each(writes)

    async def _apply_bulk(
        self, writes: Sequence[Optional[DocumentWrite]]
    ) -> WriteOutcome:
        models: List[Union[ReplaceOne, DeleteOne]] = []
        positions: List[int] = []
        for position, write in enumerate(writes):
            if write is None:
                continue
            positions.append(position)
            if write.is_delete:
                models.append(
                    DeleteOne({"_id": write.document_id}, namespace=self._namespace)
                )
            else:
                models.append(
                    ReplaceOne(
                        {"_id": write.document_id},
                        write.replacement,
                        upsert=True,
                        namespace=self._namespace,
                    )
                )

        if models:
            try:
                await self._client.bulk_write(models, ordered=True)
            except ClientBulkWriteException as e:
                failed: Optional[int] = _first_failed_index(e)
                applied: int = positions[failed] if failed is not None else 0
                return WriteOutcome(
                    applied=applied, deleted=_count_deletes(writes, applied), error=e
                )
            except PyMongoError as e:
                return WriteOutcome(applied=0, error=e)
        return WriteOutcome(applied=len(writes), deleted=_count_deletes(writes))

    async def _apply_each(
        self, writes: Sequence[Optional[DocumentWrite]]
    ) -> WriteOutcome:
        for position, write in enumerate(writes):
            if write is None:
                continue
            try:
                if write.is_delete:
                    await self._collection.delete_one({"_id": write.document_id})
                else:
                    await self._collection.replace_one(
                        {"_id": write.document_id}, write.replacement, upsert=True
                    )
            except PyMongoError as e:
                return WriteOutcome(
                    applied=position,
                    deleted=_count_deletes(writes, position),
                    error=e,
                )
        return WriteOutcome(applied=len(writes), deleted=_count_deletes(writes))


def _count_deletes(
    writes: Sequence[Optional[DocumentWrite]], upto: Optional[int] = None
) -> int:
    return sum(
        1 for write in writes[:upto] if write is not None and write.is_delete
    )
