# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for medialife tests.

Provides an in-memory storage adapter, metadata fixtures, and test
configuration helpers.
"""

import os
import tempfile
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Dict, Generator, List

import pytest
import pytest_asyncio

from medialife.storage import DeleteBatchResult, DeleteFailure, ListPage, StoredObject

# Set test environment variables
os.environ["MEDIALIFE_ADMIN_API_KEY"] = "test-api-key-12345"

AUTH_HEADERS = {"Authorization": "Bearer test-api-key-12345"}


class FakeStorage:
    """
    In-memory StorageAdapter.

    Records every call so tests can assert that nothing destructive happened.
    Keys in ``failing_keys`` come back as per-key errors from delete_objects.
    """

    def __init__(self):
        self.objects: Dict[str, StoredObject] = {}
        self.bodies: Dict[str, bytes] = {}
        self.failing_keys: set = set()
        self.delete_calls: List[List[str]] = []
        self.list_calls: List[str] = []
        self.put_calls: List[str] = []
        # Raised by the next delete_objects call when set
        self.delete_exception: Exception | None = None
        # Awaited inside delete_objects, lets tests act between batches
        self.on_delete = None

    def add_object(self, key: str, size: int = 100, age_days: float = 0) -> StoredObject:
        obj = StoredObject(
            key=key,
            size=size,
            last_modified=datetime.now(UTC) - timedelta(days=age_days),
        )
        self.objects[key] = obj
        return obj

    async def list_objects(
        self,
        prefix: str,
        continuation_token: str | None = None,
        max_keys: int = 1000,
    ) -> ListPage:
        self.list_calls.append(prefix)
        keys = sorted(k for k in self.objects if k.startswith(prefix))
        start = int(continuation_token) if continuation_token else 0
        chunk = keys[start : start + max_keys]
        next_token = str(start + max_keys) if start + max_keys < len(keys) else None
        return ListPage(objects=[self.objects[k] for k in chunk], next_token=next_token)

    async def head_object(self, key: str) -> StoredObject | None:
        return self.objects.get(key)

    async def delete_objects(self, keys: List[str]) -> DeleteBatchResult:
        self.delete_calls.append(list(keys))
        if self.on_delete is not None:
            await self.on_delete(list(keys))
        if self.delete_exception is not None:
            raise self.delete_exception

        deleted = []
        errors = []
        for key in keys:
            if key in self.failing_keys:
                errors.append(DeleteFailure(key=key, code="AccessDenied", message="Access Denied"))
                continue
            self.objects.pop(key, None)
            deleted.append(key)
        return DeleteBatchResult(deleted=deleted, errors=errors)

    async def put_object(self, key: str, body: bytes, content_type: str | None = None) -> None:
        self.put_calls.append(key)
        self.bodies[key] = body
        self.objects[key] = StoredObject(key=key, size=len(body), last_modified=datetime.now(UTC))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def test_config(temp_dir: Path):
    """Create a test configuration."""
    from medialife.config import BatchUploadConfig, LifecycleConfig

    return LifecycleConfig(
        bucket="test-bucket",
        region="us-east-1",
        data_path=temp_dir / "data",
        allowed_prefixes=["forms/"],
        scan_prefixes=["forms/"],
        retention_days=30,
        # No caching between scans in tests
        valid_key_cache_ttl=0,
        upload=BatchUploadConfig(
            batch_size=2,
            delay_between_batches=0,
            retry_base_delay=0.01,
            retry_max_delay=0.05,
            retry_jitter=0,
            timeout_seconds=1.0,
        ),
    )


@pytest_asyncio.fixture
async def test_state(test_config, fake_storage: FakeStorage):
    """Create initialized lifecycle state backed by the in-memory storage."""
    from medialife.core import initialize_lifecycle_state, shutdown_lifecycle_state

    state = await initialize_lifecycle_state(test_config, storage=fake_storage)
    yield state
    await shutdown_lifecycle_state(state)


@pytest_asyncio.fixture
async def metadata_db(temp_dir: Path) -> Path:
    """Create a temporary metadata database."""
    from medialife.jobs.sqlite_jobs import init_jobs_db
    from medialife.metadata.store import init_metadata_db

    db_path = temp_dir / "metadata.db"
    await init_metadata_db(db_path)
    await init_jobs_db(db_path)
    return db_path


async def no_sleep(_seconds: float) -> None:
    """Drop-in for asyncio.sleep that returns immediately."""
    return None
