# tests/e2e/conftest.py
"""
Pytest fixtures for the mongo-mirror end-to-end tests.

This module sets up the integration environment, including:
- Spinning up Docker containers for a MongoDB 7 source (a single-node
  replica set, so change streams are available) and a MongoDB 8 target.
- Providing fixtures with the connection strings of both servers.
- Creating and dropping isolated databases for each test function.
"""

import uuid
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict

import pytest
import pytest_asyncio
from pymongo import AsyncMongoClient, MongoClient
from pymongo.errors import OperationFailure, PyMongoError

from mongo_mirror.config import AppConfig, Config, SyncMode

REPLICA_SET: str = "rs0"


@pytest.fixture(scope="session")
def docker_compose_file(pytestconfig: pytest.Config) -> str:
    """
    Locate the docker-compose.yml file for the test suite.

    Args:
        pytestconfig (pytest.Config): The pytest configuration object.

    Returns:
        str: The absolute path to the docker-compose.yml file.
    """
    return str(Path(pytestconfig.rootdir) / "tests" / "docker-compose.yml")


@pytest.fixture(scope="session")
def docker_compose_project_name() -> str:
    """
    Define a unique, static project name for the Docker stack.

    Returns:
        str: A unique name for the docker-compose project.
    """
    return "mongo-mirror-tests"


def _is_primary(uri: str, initiate: bool = False) -> bool:
    """
    Check whether the server at `uri` accepts writes.

    Args:
        uri (str): A direct connection string to a single server.
        initiate (bool): Initiate a single-node replica set first if needed.

    Returns:
        bool: True once the server is a writable primary.
    """
    client: MongoClient = MongoClient(uri, serverSelectionTimeoutMS=1000)
    try:
        if initiate:
            try:
                client.admin.command(
                    "replSetInitiate",
                    {
                        "_id": REPLICA_SET,
                        "members": [{"_id": 0, "host": "localhost:27017"}],
                    },
                )
            except OperationFailure as e:
                # 23: AlreadyInitialized
                if e.code != 23:
                    raise
        hello: Dict[str, Any] = client.admin.command("hello")
        return bool(hello.get("isWritablePrimary"))
    except PyMongoError:
        return False
    finally:
        client.close()


@pytest.fixture(scope="session")
def source_mongo_uri(docker_ip: str, docker_services: Any) -> str:
    """
    Ensure the source replica set is up and return its connection string.

    Args:
        docker_ip (str): The IP address of the Docker host, provided by pytest-docker.
        docker_services (Any): The pytest-docker services fixture.

    Returns:
        str: A direct connection string to the source primary.
    """
    port: int = docker_services.port_for("mongo-source", 27017)
    uri: str = f"mongodb://{docker_ip}:{port}/?directConnection=true"
    docker_services.wait_until_responsive(
        timeout=60.0, pause=0.5, check=lambda: _is_primary(uri, initiate=True)
    )
    return uri


@pytest.fixture(scope="session")
def target_mongo_uri(docker_ip: str, docker_services: Any) -> str:
    """
    Ensure the target server is up and return its connection string.

    Args:
        docker_ip (str): The IP address of the Docker host, provided by pytest-docker.
        docker_services (Any): The pytest-docker services fixture.

    Returns:
        str: A direct connection string to the target server.
    """
    port: int = docker_services.port_for("mongo-target", 27017)
    uri: str = f"mongodb://{docker_ip}:{port}/?directConnection=true"
    docker_services.wait_until_responsive(
        timeout=60.0, pause=0.5, check=lambda: _is_primary(uri)
    )
    return uri


# --- Application Fixtures ---
@pytest_asyncio.fixture(scope="function")
async def mongo_databases(
    source_mongo_uri: str,
    target_mongo_uri: str,
    monkeypatch: pytest.MonkeyPatch,
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Create unique, isolated databases for a single test function.

    The environment variables read by `Config` are pointed at the new
    databases, and both databases are dropped after the test.

    Args:
        source_mongo_uri (str): Connection string of the source server.
        target_mongo_uri (str): Connection string of the target server.
        monkeypatch (pytest.MonkeyPatch): Used to set the environment.

    Yield:
        AsyncGenerator[Dict[str, str], None]: The source and target database
            names; both use the collection name `items`.
    """
    suffix: str = uuid.uuid4().hex[:12]
    source_db: str = f"source_{suffix}"
    target_db: str = f"target_{suffix}"

    monkeypatch.setenv("MIRROR_SOURCE_URI", source_mongo_uri)
    monkeypatch.setenv("MIRROR_SOURCE_DB", source_db)
    monkeypatch.setenv("MIRROR_SOURCE_COLLECTION", "items")
    monkeypatch.setenv("MIRROR_TARGET_URI", target_mongo_uri)
    monkeypatch.setenv("MIRROR_TARGET_DB", target_db)
    monkeypatch.setenv("MIRROR_TARGET_COLLECTION", "items")

    yield {"source": source_db, "target": target_db}

    async with (
        AsyncMongoClient(source_mongo_uri) as source_client,
        AsyncMongoClient(target_mongo_uri) as target_client,
    ):
        await source_client.drop_database(source_db)
        await target_client.drop_database(target_db)
        # Some tests replicate into the source server to exercise a pre-8.0 target
        await source_client.drop_database(target_db)


@pytest.fixture(scope="function")
def e2e_config(
    mongo_databases: Dict[str, str], tmp_path: Path
) -> Callable[..., Config]:
    """
    Provide a factory for configs wired to the isolated databases.

    Backoff delays are shortened so idle field-mode polls stay fast.

    Args:
        mongo_databases (Dict[str, str]): The isolated database names.
        tmp_path (Path): The pytest fixture for a temporary directory.

    Returns:
        Callable[..., Config]: Builds a `Config` from `AppConfig` overrides.
    """

    def _factory(**overrides: Any) -> Config:
        settings: Dict[str, Any] = {
            "mode": SyncMode.FIELD,
            "sync_field": "updatedAt",
            "batch_limit": 100,
            "checkpoint_file": tmp_path / "resume.json",
            "health_file": tmp_path / "health",
            "max_await_ms": 200,
            "backoff_base_s": 0.1,
            "backoff_max_s": 0.5,
        }
        settings.update(overrides)
        return Config(app=AppConfig(**settings))

    return _factory
