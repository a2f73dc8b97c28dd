# src/mongo_mirror/checkpoint.py
"""
Durable, crash-safe storage of the replication checkpoint.

The checkpoint is a small JSON document so that operators can inspect and
hand-edit it for disaster recovery. Writes go to a temporary file in the
same directory which then atomically replaces the previous checkpoint, so
a crash can never leave a half-written file behind.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from bson import json_util

from mongo_mirror.config import AppConfig, SyncMode
from mongo_mirror.exceptions import (
    CheckpointError,
    CheckpointMismatch,
    ConfigError,
    InvalidResumeValue,
)
from mongo_mirror.models import (
    ChangeFeedCheckpoint,
    Checkpoint,
    FieldCheckpoint,
    ScalarType,
    format_scalar,
    parse_scalar,
)

logger: logging.Logger = logging.getLogger(__name__)


def _fsync_directory(directory: Path) -> None:
    """Flush a directory entry so a completed rename survives power loss."""
    try:
        fd: int = os.open(directory, os.O_RDONLY)
    except OSError:
        return  # Not supported on every platform
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def encode_checkpoint(checkpoint: Checkpoint) -> Dict[str, Any]:
    """
    Convert a checkpoint into its on-disk record.

    Args:
        checkpoint (Checkpoint): The checkpoint to encode.

    Returns:
        Dict[str, Any]: A JSON-serializable record carrying a `type` tag.
    """
    if isinstance(checkpoint, ChangeFeedCheckpoint):
        return {
            "type": ChangeFeedCheckpoint.kind,
            "token": json.loads(
                json_util.dumps(
                    checkpoint.token, json_options=json_util.RELAXED_JSON_OPTIONS
                )
            ),
        }
    record: Dict[str, Any] = {
        "type": FieldCheckpoint.kind,
        "field": checkpoint.field,
        "value_type": checkpoint.value_type.value,
        "value": format_scalar(checkpoint.value, checkpoint.value_type),
    }
    if checkpoint.last_id is not None and checkpoint.id_type is not None:
        record["last_id"] = format_scalar(checkpoint.last_id, checkpoint.id_type)
        record["id_type"] = checkpoint.id_type.value
    return record


def decode_checkpoint(record: Dict[str, Any]) -> Checkpoint:
    """
    Rebuild a checkpoint from its on-disk record.

    Args:
        record (Dict[str, Any]): The parsed JSON record.

    Returns:
        Checkpoint: The decoded checkpoint.

    Raises:
        CheckpointError: If the record is malformed.
    """
    kind: Optional[str] = record.get("type")
    try:
        if kind == ChangeFeedCheckpoint.kind:
            token: Dict[str, Any] = json_util.loads(json.dumps(record["token"]))
            return ChangeFeedCheckpoint(token=token)
        if kind == FieldCheckpoint.kind:
            value_type: ScalarType = ScalarType(record["value_type"])
            id_type: Optional[ScalarType] = (
                ScalarType(record["id_type"]) if "last_id" in record else None
            )
            return FieldCheckpoint(
                field=record["field"],
                value_type=value_type,
                value=parse_scalar(str(record["value"]), value_type),
                last_id=(
                    parse_scalar(str(record["last_id"]), id_type)
                    if id_type is not None
                    else None
                ),
                id_type=id_type,
            )
    except (KeyError, ValueError, InvalidResumeValue) as e:
        raise CheckpointError(f"Malformed {kind} checkpoint record: {e}") from e
    raise CheckpointError(f"Unknown checkpoint type '{kind}'.")


def override_checkpoint(app_config: AppConfig) -> Optional[Checkpoint]:
    """
    Build the operator-supplied checkpoint from the CLI resume options.

    Args:
        app_config (AppConfig): The validated run settings.

    Returns:
        Checkpoint, optional: The override, or None if no value was supplied.
    """
    if app_config.resume_value is None:
        return None
    if app_config.mode is SyncMode.CHANGE_STREAM:
        return ChangeFeedCheckpoint(token={"_data": app_config.resume_value})

    if app_config.sync_field is None or app_config.resume_type is None:
        raise ConfigError(
            "A field resume value needs a sync field and a --resume-type."
        )
    value_type: ScalarType = ScalarType(app_config.resume_type)
    value: Any = parse_scalar(app_config.resume_value, value_type)
    if app_config.sync_field == "_id":
        return FieldCheckpoint(
            field="_id",
            value_type=value_type,
            value=value,
            last_id=value,
            id_type=value_type,
        )
    if app_config.resume_id is None:
        return FieldCheckpoint(
            field=app_config.sync_field, value_type=value_type, value=value
        )
    return FieldCheckpoint(
        field=app_config.sync_field,
        value_type=value_type,
        value=value,
        last_id=parse_scalar(app_config.resume_id, ScalarType.OBJECTID),
        id_type=ScalarType.OBJECTID,
    )


class CheckpointStore:
    """
    A JSON file holding the single tagged checkpoint of a replication run.

    The store knows which strategy (and sync field) the run is configured
    for and refuses to hand back a checkpoint written for another one.
    """

    def __init__(self, path: Path, mode: SyncMode, sync_field: Optional[str] = None):
        """
        Initializes the store.

        Args:
            path (Path): Location of the checkpoint file.
            mode (SyncMode): The configured sync strategy.
            sync_field (str, optional): The configured sync field (field mode).
        """
        self._path: Path = path
        self._mode: SyncMode = mode
        self._sync_field: Optional[str] = sync_field

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[Checkpoint]:
        """
        Reads the stored checkpoint.

        Returns:
            Checkpoint, optional: The stored checkpoint, or None when no file
                exists yet (start of history).

        Raises:
            CheckpointError: If the file cannot be read or parsed.
            CheckpointMismatch: If the file belongs to another strategy or field.
        """
        if not self._path.exists():
            logger.info(f"No checkpoint found at '{self._path}'.")
            return None
        try:
            record: Any = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CheckpointError(
                f"Failed to read checkpoint '{self._path}': {e}"
            ) from e
        if not isinstance(record, dict):
            raise CheckpointError(f"Checkpoint '{self._path}' is not a JSON object.")

        checkpoint: Checkpoint = decode_checkpoint(record)
        expected_kind: str = (
            ChangeFeedCheckpoint.kind
            if self._mode is SyncMode.CHANGE_STREAM
            else FieldCheckpoint.kind
        )
        if checkpoint.kind != expected_kind:
            raise CheckpointMismatch(
                f"Checkpoint '{self._path}' holds a '{checkpoint.kind}' position "
                f"but the run is configured for '{expected_kind}' sync. Remove the "
                "file or pass an explicit --resume-value to start over."
            )
        if (
            isinstance(checkpoint, FieldCheckpoint)
            and checkpoint.field != self._sync_field
        ):
            raise CheckpointMismatch(
                f"Checkpoint '{self._path}' tracks field '{checkpoint.field}' but "
                f"the run is configured for field '{self._sync_field}'."
            )
        logger.info(f"Loaded {checkpoint.kind} checkpoint from '{self._path}'.")
        return checkpoint

    def persist(self, checkpoint: Checkpoint) -> None:
        """
        Atomically replaces the stored checkpoint.

        Args:
            checkpoint (Checkpoint): The position to store.

        Raises:
            CheckpointError: If the file cannot be written.
        """
        payload: str = json.dumps(encode_checkpoint(checkpoint), indent=2)
        directory: Path = self._path.parent
        tmp_name: Optional[str] = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=directory,
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CheckpointError(
                f"Failed to write checkpoint '{self._path}': {e}"
            ) from e
        _fsync_directory(directory)
        logger.debug(f"Checkpoint written to '{self._path}'.")
