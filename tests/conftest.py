"""Shared fixtures: in-memory storage backend and workspace builders."""

from __future__ import annotations

import logging
from typing import Any, Iterator

import pytest

from bucketdock.cache import Database
from bucketdock.config import BucketDockConfig
from bucketdock.events import EventBus
from bucketdock.providers import StorageConfig
from bucketdock.workspace import Workspace

from fakes import FakeStorage, make_config


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def database() -> Iterator[Database]:
    db = Database(":memory:")
    yield db
    db.close()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture(autouse=True)
def _detach_cli_logging() -> Iterator[None]:
    yield
    logger = logging.getLogger("bucketdock")
    for handler in list(logger.handlers):
        if getattr(handler, "_bucketdock", False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def source_config() -> StorageConfig:
    return make_config("minio", bucket="photos")


@pytest.fixture
def dest_config() -> StorageConfig:
    return make_config("rustfs", bucket="archive")


@pytest.fixture
def workspace_factory(storage: FakeStorage, tmp_path):
    opened: list[Workspace] = []

    def _build(**overrides: Any) -> Workspace:
        data: dict[str, Any] = {
            "transfer": {
                "max_concurrent_moves": 2,
                "cache_flush_delay_ms": 0,
                "cleanup_retry_attempts": 1,
            },
        }
        for section, values in overrides.items():
            data.setdefault(section, {}).update(values)
        config = BucketDockConfig.model_validate(data)
        workspace = Workspace.from_config(
            config, adapter_factory=storage.adapter, database_path=tmp_path / f"cache-{len(opened)}.db"
        )
        opened.append(workspace)
        return workspace

    yield _build
    for workspace in opened:
        workspace.close()


@pytest.fixture
def workspace(workspace_factory) -> Workspace:
    return workspace_factory()
