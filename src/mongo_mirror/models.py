# src/mongo_mirror/models.py
"""
Value types shared by the synchronization engine.

This module defines the tagged checkpoint variants, the typed scalars a
field-based checkpoint can hold, the two kinds of batch items produced by
the cursor strategies, and the small interface both strategies implement.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Protocol, Sequence, Union

from bson import ObjectId
from bson.errors import InvalidId

from mongo_mirror.exceptions import InvalidResumeValue, UnsupportedFieldType

_INT64_MIN: int = -(2**63)
_INT64_MAX: int = 2**63 - 1


class ScalarType(str, Enum):
    """The scalar kinds a sync field (or a resume override) may hold."""

    OBJECTID = "objectid"
    DATE = "date"
    INT = "int"
    STRING = "string"


def parse_scalar(raw: str, scalar_type: ScalarType) -> Any:
    """
    Parse a textual value as the given scalar type.

    Dates are ISO 8601 (naive values are taken as UTC) or integer
    milliseconds since the epoch.

    Args:
        raw (str): The textual value, e.g. from the CLI or a checkpoint file.
        scalar_type (ScalarType): The declared type of the value.

    Returns:
        Any: The parsed value as a BSON-compatible Python object.
    """
    try:
        if scalar_type is ScalarType.OBJECTID:
            return ObjectId(raw)
        if scalar_type is ScalarType.DATE:
            if raw.lstrip("-").isdigit():
                return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
            parsed: datetime = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        if scalar_type is ScalarType.INT:
            value: int = int(raw)
            if not _INT64_MIN <= value <= _INT64_MAX:
                raise InvalidResumeValue(f"Integer {raw} does not fit in 64 bits.")
            return value
        return raw
    except (InvalidId, TypeError, ValueError) as e:
        raise InvalidResumeValue(
            f"Cannot parse '{raw}' as {scalar_type.value}: {e}"
        ) from e


def format_scalar(value: Any, scalar_type: ScalarType) -> str:
    """
    Render a scalar as text that `parse_scalar` reads back.

    Args:
        value (Any): The scalar value.
        scalar_type (ScalarType): Its declared type.

    Returns:
        str: The human-editable textual form.
    """
    if scalar_type is ScalarType.DATE:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return str(value)


def infer_scalar_type(value: Any) -> ScalarType:
    """
    Determine the scalar type of a value read from a document.

    Args:
        value (Any): The field value.

    Returns:
        ScalarType: The matching scalar type.

    Raises:
        UnsupportedFieldType: If the value is not one of the supported kinds.
    """
    # bool is an int subclass but is not an ordered sync value
    if isinstance(value, bool):
        raise UnsupportedFieldType("Boolean values cannot be used as sync values.")
    if isinstance(value, ObjectId):
        return ScalarType.OBJECTID
    if isinstance(value, datetime):
        return ScalarType.DATE
    if isinstance(value, int):
        return ScalarType.INT
    if isinstance(value, str):
        return ScalarType.STRING
    raise UnsupportedFieldType(
        f"Values of type '{type(value).__name__}' cannot be used as sync values."
    )


@dataclass(frozen=True)
class ChangeFeedCheckpoint:
    """
    Position in the source change stream.

    Attributes:
        token (Dict[str, Any]): The opaque resume token of the last applied event.
    """

    kind: ClassVar[str] = "change_stream"

    token: Dict[str, Any]


@dataclass(frozen=True)
class FieldCheckpoint:
    """
    Position in `(field value, _id)` order for field-based sync.

    Attributes:
        field (str): The name of the sync field this position refers to.
        value_type (ScalarType): The scalar type of `value`.
        value (Any): The sync field value of the last applied document.
        last_id (Any, optional): The `_id` of the last applied document. None
            when the position came from an operator override without an id.
        id_type (ScalarType, optional): The scalar type of `last_id`.
    """

    kind: ClassVar[str] = "field"

    field: str
    value_type: ScalarType
    value: Any
    last_id: Optional[Any] = None
    id_type: Optional[ScalarType] = None


Checkpoint = Union[ChangeFeedCheckpoint, FieldCheckpoint]


class OperationType(str, Enum):
    """Mutation kinds replicated from the change stream."""

    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """
    One mutation observed on the source change stream.

    Attributes:
        operation (OperationType): What happened to the document.
        document_id (Any): The `_id` of the affected document.
        document (Dict[str, Any], optional): The full post-image; None for
            deletes and for updates whose document has since been removed.
        token (Dict[str, Any]): The resume token as of this event.
    """

    operation: OperationType
    document_id: Any
    document: Optional[Dict[str, Any]]
    token: Dict[str, Any]

    @property
    def checkpoint(self) -> ChangeFeedCheckpoint:
        return ChangeFeedCheckpoint(token=self.token)


@dataclass(frozen=True)
class SourceRecord:
    """
    One document read by the field-based cursor.

    Attributes:
        id (Any): The document `_id`.
        field_value (Any): The value of the sync field.
        document (Dict[str, Any]): The full document.
        checkpoint (FieldCheckpoint): The position as of this document.
    """

    id: Any
    field_value: Any
    document: Dict[str, Any]
    checkpoint: FieldCheckpoint


BatchItem = Union[ChangeEvent, SourceRecord]


class CursorStrategy(Protocol):
    """A producer of ordered batches of changes to replicate."""

    name: str

    async def next(self, limit: int) -> Sequence[BatchItem]:
        """Return up to `limit` items after the committed position."""
        ...

    def commit(self, checkpoint: Checkpoint) -> None:
        """Move the committed position to an applied item's checkpoint."""
        ...

    async def reset(self) -> None:
        """Drop any open source cursor after a transient failure."""
        ...

    async def close(self) -> None:
        ...
