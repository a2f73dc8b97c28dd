# tests/conftest.py
"""
Pytest configuration and fixtures for the mongo-mirror unit tests.

This module provides in-memory stand-ins for the parts of the async MongoDB
driver the engine relies on:
- A collection supporting filtered, sorted, limited `find` queries, single
  document upserts and deletes, and a resumable change stream.
- A client supporting ordered client-level `bulk_write` and `buildInfo`.
- Factories for application configuration objects.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest
from pymongo import DeleteOne, ReplaceOne
from pymongo.errors import OperationFailure

from mongo_mirror.config import AppConfig, SyncMode
from mongo_mirror.field_cursor import get_field


def _matches(document: Mapping[str, Any], query: Mapping[str, Any]) -> bool:
    """
    Evaluate the subset of MongoDB query operators used by the engine.

    Args:
        document (Mapping[str, Any]): The candidate document.
        query (Mapping[str, Any]): The filter document.

    Returns:
        bool: True if the document satisfies the filter.
    """
    for key, condition in query.items():
        if key == "$or":
            if not any(_matches(document, sub) for sub in condition):
                return False
            continue
        value: Any = get_field(document, key)
        if isinstance(condition, dict) and all(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if op == "$ne":
                    ok: bool = value != operand
                elif value is None:
                    ok = False
                elif op == "$gt":
                    ok = value > operand
                elif op == "$gte":
                    ok = value >= operand
                else:
                    raise NotImplementedError(op)
                if not ok:
                    return False
        elif value != condition:
            return False
    return True


class FakeCursor:
    """The result of `FakeCollection.find`."""

    def __init__(self, documents: List[Dict[str, Any]]) -> None:
        self._documents: List[Dict[str, Any]] = documents

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        return list(self._documents[:length])


class FakeChangeStream:
    """A change stream over the event log of a `FakeCollection`."""

    def __init__(self, collection: "FakeCollection", position: int) -> None:
        self._collection: FakeCollection = collection
        self.position: int = position
        self.closed: bool = False

    @property
    def resume_token(self) -> Dict[str, Any]:
        # Tokens encode the number of events seen, matching `FakeCollection.emit`
        return {"_data": f"{self.position:08d}"}

    async def try_next(self) -> Optional[Dict[str, Any]]:
        if self._collection.stream_errors:
            raise self._collection.stream_errors.pop(0)
        if self.position >= len(self._collection.events):
            return None
        event: Dict[str, Any] = self._collection.events[self.position]
        self.position += 1
        return event

    async def close(self) -> None:
        self.closed = True


class FakeCollection:
    """An in-memory collection keyed by `_id`."""

    def __init__(self, name: str = "db.coll") -> None:
        self.full_name: str = name
        self.documents: Dict[Any, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.streams: List[FakeChangeStream] = []
        self.watch_calls: List[Dict[str, Any]] = []
        self.find_calls: List[Dict[str, Any]] = []
        self.stream_errors: List[Exception] = []
        self.find_errors: List[Exception] = []
        self.fail_ids: Dict[Any, Exception] = {}
        self.write_log: List[Tuple[str, Any]] = []

    # --- Source-side helpers ---
    def insert(self, document: Dict[str, Any]) -> None:
        self.documents[document["_id"]] = dict(document)
        self.emit("insert", document["_id"], dict(document))

    def emit(
        self,
        operation: str,
        document_id: Any,
        document: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token: Dict[str, Any] = {"_data": f"{len(self.events) + 1:08d}"}
        event: Dict[str, Any] = {
            "_id": token,
            "operationType": operation,
            "documentKey": {"_id": document_id},
        }
        if document is not None:
            event["fullDocument"] = document
        self.events.append(event)
        return event

    # --- Driver surface ---
    def find(
        self,
        query: Mapping[str, Any],
        sort: Sequence[Tuple[str, int]] = (),
        limit: int = 0,
    ) -> FakeCursor:
        self.find_calls.append({"filter": query, "sort": sort, "limit": limit})
        if self.find_errors:
            raise self.find_errors.pop(0)
        matched: List[Dict[str, Any]] = [
            doc for doc in self.documents.values() if _matches(doc, query)
        ]
        matched.sort(key=lambda doc: tuple(get_field(doc, key) for key, _ in sort))
        return FakeCursor(matched[:limit] if limit else matched)

    async def watch(self, **options: Any) -> FakeChangeStream:
        self.watch_calls.append(options)
        token: Optional[Dict[str, Any]] = options.get("resume_after")
        position: int = len(self.events)
        if token is not None:
            data: str = str(token.get("_data", ""))
            if not data.isdigit() or int(data) > len(self.events):
                raise OperationFailure("Resume point no longer in oplog", code=286)
            position = int(data)
        stream: FakeChangeStream = FakeChangeStream(self, position)
        self.streams.append(stream)
        return stream

    def _check_failure(self, document_id: Any) -> None:
        if document_id in self.fail_ids:
            raise self.fail_ids[document_id]

    async def replace_one(
        self,
        query: Mapping[str, Any],
        replacement: Dict[str, Any],
        upsert: bool = False,
    ) -> None:
        self._check_failure(query["_id"])
        assert upsert
        self.documents[query["_id"]] = dict(replacement)
        self.write_log.append(("replace", query["_id"]))

    async def delete_one(self, query: Mapping[str, Any]) -> None:
        self._check_failure(query["_id"])
        self.documents.pop(query["_id"], None)
        self.write_log.append(("delete", query["_id"]))


class FakeAdmin:
    """The `admin` database of a `FakeClient`."""

    def __init__(self, version: Optional[str], error: Optional[Exception]) -> None:
        self.version: Optional[str] = version
        self.error: Optional[Exception] = error
        self.commands: List[str] = []

    async def command(self, name: str) -> Dict[str, Any]:
        self.commands.append(name)
        if self.error is not None:
            raise self.error
        return {"version": self.version} if self.version is not None else {}


@dataclass
class FakeClient:
    """A client owning one target collection, supporting client bulk writes."""

    target: FakeCollection = field(default_factory=FakeCollection)
    version: Optional[str] = "8.0.4"
    probe_error: Optional[Exception] = None
    bulk_error_factory: Optional[Callable[[int], Exception]] = None
    bulk_calls: List[int] = field(default_factory=list)
    bulk_namespaces: List[str] = field(default_factory=list)

    @property
    def admin(self) -> FakeAdmin:
        return FakeAdmin(self.version, self.probe_error)

    async def bulk_write(self, models: List[Any], ordered: bool = True) -> None:
        assert ordered
        self.bulk_calls.append(len(models))
        for index, model in enumerate(models):
            collection: FakeCollection = self.target
            document_id: Any = model._filter["_id"]
            self.bulk_namespaces.append(model._namespace)
            if document_id in collection.fail_ids and self.bulk_error_factory:
                raise self.bulk_error_factory(index)
            if isinstance(model, ReplaceOne):
                collection.documents[document_id] = dict(model._doc)
                collection.write_log.append(("replace", document_id))
            elif isinstance(model, DeleteOne):
                collection.documents.pop(document_id, None)
                collection.write_log.append(("delete", document_id))


# --- Fixtures ---
@pytest.fixture(scope="function")
def source_collection() -> FakeCollection:
    """
    Provide an empty in-memory source collection.

    Returns:
        FakeCollection: The source collection.
    """
    return FakeCollection("source.items")


@pytest.fixture(scope="function")
def target_collection() -> FakeCollection:
    """
    Provide an empty in-memory target collection.

    Returns:
        FakeCollection: The target collection.
    """
    return FakeCollection("target.items")


@pytest.fixture(scope="function")
def target_client(target_collection: FakeCollection) -> FakeClient:
    """
    Provide a fake target client that owns `target_collection`.

    Args:
        target_collection (FakeCollection): The target collection fixture.

    Returns:
        FakeClient: A client reporting MongoDB 8.0.
    """
    return FakeClient(target=target_collection)


@pytest.fixture(scope="function")
def field_config() -> Callable[..., AppConfig]:
    """
    Provide a factory for field-mode application configs.

    Returns:
        Callable[..., AppConfig]: Builds an `AppConfig` syncing on `updatedAt`
            unless overridden by keyword arguments.
    """

    def _factory(**overrides: Any) -> AppConfig:
        settings: Dict[str, Any] = {
            "mode": SyncMode.FIELD,
            "sync_field": "updatedAt",
            "batch_limit": 10,
        }
        settings.update(overrides)
        return AppConfig(**settings)

    return _factory
