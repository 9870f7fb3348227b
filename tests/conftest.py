# tests/conftest.py

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from coordinator import ConsistencyCoordinator
from main import create_app
from stores import TaskStore, UserStore

from .fakes import SnapshotDatabase


@pytest.fixture()
def database() -> SnapshotDatabase:
    db = SnapshotDatabase(mongomock.MongoClient(), "tasktrack_test")
    db.ensure_indexes()
    return db


@pytest.fixture()
def tasks(database: SnapshotDatabase) -> TaskStore:
    return TaskStore(database.tasks)


@pytest.fixture()
def users(database: SnapshotDatabase) -> UserStore:
    return UserStore(database.users)


@pytest.fixture()
def coordinator(database: SnapshotDatabase, tasks: TaskStore, users: UserStore) -> ConsistencyCoordinator:
    return ConsistencyCoordinator(database, tasks, users)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="mongodb://unused",
        database_name="tasktrack_test",
        server_selection_timeout_ms=100,
        port=0,
        log_level="DEBUG",
        cors_origins=["*"],
    )


@pytest.fixture()
def client(database: SnapshotDatabase, settings: Settings) -> TestClient:
    return TestClient(create_app(database=database, settings=settings))


@pytest.fixture()
def deadline() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=7)
