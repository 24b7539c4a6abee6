# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Integration Tests for medialife.

These tests verify the integration between components:
- FastAPI admin endpoints
- Authentication
- Configuration builders and environment profiles
"""

from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

from conftest import AUTH_HEADERS

PREFIX = "/admin/media-cleanup"


def _client(test_config, test_state) -> AsyncClient:
    from medialife.integrations.fastapi import register_media_cleanup_routes

    app = FastAPI()
    register_media_cleanup_routes(app, test_config, test_state)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# ============================================================================
# Authentication
# ============================================================================

@pytest.mark.asyncio
async def test_missing_api_key_is_rejected(test_config, test_state):
    async with _client(test_config, test_state) as client:
        response = await client.get(f"{PREFIX}/status")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_wrong_api_key_is_rejected(test_config, test_state, fake_storage):
    async with _client(test_config, test_state) as client:
        response = await client.post(
            f"{PREFIX}/cleanup",
            json={"orphaned_files": ["forms/misc/a.bin"]},
            headers={"Authorization": "Bearer wrong-key"},
        )

    assert response.status_code == 401
    assert fake_storage.delete_calls == []


@pytest.mark.asyncio
async def test_unset_api_key_is_server_error(test_config, test_state, monkeypatch):
    monkeypatch.delenv("MEDIALIFE_ADMIN_API_KEY")

    async with _client(test_config, test_state) as client:
        response = await client.get(f"{PREFIX}/status", headers=AUTH_HEADERS)

    assert response.status_code == 500


# ============================================================================
# Scan and cleanup endpoints
# ============================================================================

@pytest.mark.asyncio
async def test_scan_endpoint_reports_orphans(test_config, test_state, fake_storage):
    fake_storage.add_object("forms/misc/old.bin", size=2048, age_days=45)
    fake_storage.add_object("forms/misc/new.bin", size=2048, age_days=1)

    async with _client(test_config, test_state) as client:
        response = await client.get(f"{PREFIX}/scan", headers=AUTH_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["job_id"]
    assert [f["key"] for f in data["orphaned_files"]] == ["forms/misc/old.bin"]
    assert data["metrics"]["files_scanned"] == 2
    assert data["metrics"]["orphaned_files_found"] == 1
    assert data["truncated"] is False
    assert fake_storage.delete_calls == []


@pytest.mark.asyncio
async def test_scan_endpoint_rejects_prefix_outside_allow_list(test_config, test_state, fake_storage):
    async with _client(test_config, test_state) as client:
        response = await client.get(
            f"{PREFIX}/scan",
            params={"prefixes": "private/"},
            headers=AUTH_HEADERS,
        )

    assert response.status_code == 400
    assert response.json()["detail"]["prefix"] == "private/"
    assert fake_storage.list_calls == []


@pytest.mark.asyncio
async def test_cleanup_rejects_traversal_key(test_config, test_state, fake_storage):
    async with _client(test_config, test_state) as client:
        response = await client.post(
            f"{PREFIX}/cleanup",
            json={"orphaned_files": ["forms/misc/a.bin", "../../etc/passwd"]},
            headers=AUTH_HEADERS,
        )

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert "rejected" in detail
    assert fake_storage.delete_calls == []


@pytest.mark.asyncio
async def test_cleanup_rejects_malformed_body(test_config, test_state, fake_storage):
    async with _client(test_config, test_state) as client:
        response = await client.post(
            f"{PREFIX}/cleanup",
            json={"orphaned_files": "forms/misc/a.bin"},
            headers=AUTH_HEADERS,
        )

    assert response.status_code == 400
    assert fake_storage.delete_calls == []


@pytest.mark.asyncio
async def test_cleanup_endpoint_deletes_keys(test_config, test_state, fake_storage):
    fake_storage.add_object("forms/misc/a.bin", age_days=60)
    fake_storage.add_object("forms/misc/b.bin", age_days=60)

    async with _client(test_config, test_state) as client:
        response = await client.post(
            f"{PREFIX}/cleanup",
            json={
                "orphaned_files": ["forms/misc/a.bin", "forms/misc/b.bin"],
                "executed_by": "ops@example.gov",
            },
            headers=AUTH_HEADERS,
        )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["status"] == "completed"
    assert data["deleted"] == 2
    assert data["failed"] == 0
    assert sorted(data["deleted_keys"]) == ["forms/misc/a.bin", "forms/misc/b.bin"]
    assert fake_storage.objects == {}


@pytest.mark.asyncio
async def test_cleanup_endpoint_dry_run(test_config, test_state, fake_storage):
    fake_storage.add_object("forms/misc/a.bin", age_days=60)

    async with _client(test_config, test_state) as client:
        response = await client.post(
            f"{PREFIX}/cleanup",
            json={"orphaned_files": ["forms/misc/a.bin"], "dry_run": True},
            headers=AUTH_HEADERS,
        )

    assert response.status_code == 200
    assert response.json()["dry_run"] is True
    assert fake_storage.delete_calls == []
    assert "forms/misc/a.bin" in fake_storage.objects


@pytest.mark.asyncio
async def test_cleanup_endpoint_conflict_with_running_job(test_config, test_state, fake_storage):
    import aiosqlite

    from medialife.jobs.sqlite_jobs import create_job, start_job
    from medialife.jobs.state import JobConfiguration, JobType, TriggerSource

    async with aiosqlite.connect(test_state["db_path"]) as db:
        job = await create_job(
            db,
            JobType.AUDIT,
            JobConfiguration(dry_run=False, include_directories=["forms/"]),
            TriggerSource.SCHEDULED,
        )
        await start_job(db, job.id)

    async with _client(test_config, test_state) as client:
        response = await client.post(
            f"{PREFIX}/cleanup",
            json={"orphaned_files": ["forms/misc/a.bin"]},
            headers=AUTH_HEADERS,
        )

    assert response.status_code == 409
    assert fake_storage.delete_calls == []


@pytest.mark.asyncio
async def test_storage_failure_returns_generic_error(test_config, test_state, fake_storage):
    from unittest.mock import AsyncMock

    fake_storage.list_objects = AsyncMock(side_effect=RuntimeError("secret endpoint detail"))

    async with _client(test_config, test_state) as client:
        response = await client.get(f"{PREFIX}/scan", headers=AUTH_HEADERS)

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Internal server error"}


# ============================================================================
# Job endpoints
# ============================================================================

@pytest.mark.asyncio
async def test_job_endpoints(test_config, test_state, fake_storage):
    fake_storage.add_object("forms/misc/old.bin", size=10, age_days=45)

    async with _client(test_config, test_state) as client:
        scan = (await client.get(f"{PREFIX}/scan", headers=AUTH_HEADERS)).json()

        listed = await client.get(f"{PREFIX}/jobs", headers=AUTH_HEADERS)
        assert listed.status_code == 200
        jobs = listed.json()["jobs"]
        assert [j["id"] for j in jobs] == [scan["job_id"]]
        assert "orphaned_files" not in jobs[0]

        filtered = await client.get(
            f"{PREFIX}/jobs", params={"job_type": "cleanup"}, headers=AUTH_HEADERS
        )
        assert filtered.json()["jobs"] == []

        bad_filter = await client.get(
            f"{PREFIX}/jobs", params={"status": "exploded"}, headers=AUTH_HEADERS
        )
        assert bad_filter.status_code == 400

        detail = await client.get(f"{PREFIX}/jobs/{scan['job_id']}", headers=AUTH_HEADERS)
        assert detail.status_code == 200
        job = detail.json()
        assert job["job_type"] == "verification"
        assert job["status"] == "completed"
        assert job["triggered_by"] == "api"
        assert job["configuration"]["dry_run"] is True
        assert [i["key"] for i in job["orphaned_files"]] == ["forms/misc/old.bin"]

        missing = await client.get(f"{PREFIX}/jobs/01NOSUCHJOB", headers=AUTH_HEADERS)
        assert missing.status_code == 404

        # A finished job cannot be cancelled
        finished = await client.delete(f"{PREFIX}/jobs/{scan['job_id']}", headers=AUTH_HEADERS)
        assert finished.status_code == 409

        unknown = await client.delete(f"{PREFIX}/jobs/01NOSUCHJOB", headers=AUTH_HEADERS)
        assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_cancel_pending_job_endpoint(test_config, test_state):
    import aiosqlite

    from medialife.jobs.sqlite_jobs import create_job
    from medialife.jobs.state import JobConfiguration, JobType, TriggerSource

    async with aiosqlite.connect(test_state["db_path"]) as db:
        job = await create_job(db, JobType.CLEANUP, JobConfiguration(), TriggerSource.API)

    async with _client(test_config, test_state) as client:
        response = await client.delete(f"{PREFIX}/jobs/{job.id}", headers=AUTH_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"success": True, "job_id": job.id, "status": "cancelled"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "target, method, path",
    [
        ("list_cleanup_jobs", "get", "/jobs"),
        ("get_cleanup_job", "get", "/jobs/01SOMEJOB"),
        ("cancel_cleanup_job", "delete", "/jobs/01SOMEJOB"),
    ],
)
async def test_job_endpoints_hide_unexpected_errors(
    test_config, test_state, monkeypatch, target, method, path
):
    from unittest.mock import AsyncMock

    import medialife.integrations.fastapi as integration

    monkeypatch.setattr(integration, target, AsyncMock(side_effect=RuntimeError("db file is locked")))

    async with _client(test_config, test_state) as client:
        response = await client.request(method.upper(), f"{PREFIX}{path}", headers=AUTH_HEADERS)

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Internal server error"}


# ============================================================================
# Status, health, stats and upload metrics
# ============================================================================

@pytest.mark.asyncio
async def test_status_endpoint(test_config, test_state):
    async with _client(test_config, test_state) as client:
        response = await client.get(f"{PREFIX}/status", headers=AUTH_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["bucket"] == "test-bucket"
    assert data["allowed_prefixes"] == ["forms/"]
    assert data["retention_days"] == 30
    assert data["auto_delete"] is False
    assert data["last_run_at"] is None
    assert data["next_scheduled_run"] is None


@pytest.mark.asyncio
async def test_health_endpoint(test_config, test_state, fake_storage):
    from unittest.mock import AsyncMock

    async with _client(test_config, test_state) as client:
        healthy = (await client.get(f"{PREFIX}/health", headers=AUTH_HEADERS)).json()

        fake_storage.list_objects = AsyncMock(side_effect=ConnectionError("unreachable"))
        degraded = (await client.get(f"{PREFIX}/health", headers=AUTH_HEADERS)).json()

    assert healthy["status"] == "healthy"
    assert healthy["metadata_accessible"] is True
    assert healthy["storage_reachable"] is True

    assert degraded["status"] == "degraded"
    assert degraded["storage_reachable"] is False
    assert degraded["storage_error"] == "unreachable"


@pytest.mark.asyncio
async def test_stats_endpoint(test_config, test_state, fake_storage):
    fake_storage.add_object("forms/misc/a.bin", size=1024 * 1024, age_days=60)

    async with _client(test_config, test_state) as client:
        await client.get(f"{PREFIX}/scan", headers=AUTH_HEADERS)
        await client.post(
            f"{PREFIX}/cleanup",
            json={"orphaned_files": ["forms/misc/a.bin"]},
            headers=AUTH_HEADERS,
        )
        response = await client.get(f"{PREFIX}/stats", headers=AUTH_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["total_scans"] == 1
    assert data["total_cleanups"] == 1
    assert data["total_deleted"] == 1
    assert data["total_reclaimed_mb"] == 1.0
    assert data["jobs"]["total_jobs"] == 2
    assert data["jobs"]["jobs_by_status"] == {"completed": 2}


@pytest.mark.asyncio
async def test_upload_metrics_endpoint(test_config, test_state):
    collector = test_state["upload_metrics"]
    collector.record_upload_start("a.jpg", 10)
    collector.record_upload_success("a.jpg", 10, 0.5)

    async with _client(test_config, test_state) as client:
        summary = (await client.get(f"{PREFIX}/upload-metrics", headers=AUTH_HEADERS)).json()
        full = (
            await client.get(
                f"{PREFIX}/upload-metrics",
                params={"include_events": "true"},
                headers=AUTH_HEADERS,
            )
        ).json()

    assert summary["session_id"] == collector.session_id
    assert summary["summary"]["successful_uploads"] == 1
    assert len(full["events"]) == 2


# ============================================================================
# Configuration builders and profiles
# ============================================================================

def test_create_config_defaults(temp_dir: Path):
    from medialife.builder import create_config

    config = create_config(
        bucket="media-bucket",
        data_path=temp_dir,
        allowed_prefixes=["forms/", "uploads/"],
        upload={"batch_size": 5},
    )

    assert config.allowed_prefixes == ["forms/", "uploads/"]
    assert config.scan_prefixes == ["forms/", "uploads/"]
    assert config.retention_days == 30
    assert config.auto_delete is False
    assert config.upload.batch_size == 5
    assert config.db_path == temp_dir / "metadata.db"


def test_build_from_steps():
    from medialife.builder import (
        build_from_steps,
        exclude_patterns,
        retain_objects_older_than,
        run_daily_at,
        with_bucket,
    )

    config = build_from_steps(
        lambda c: with_bucket(c, "media-bucket"),
        lambda c: retain_objects_older_than(c, 14),
        lambda c: exclude_patterns(c, ["forms/misc/keep-*"]),
        lambda c: run_daily_at(c, "03:30"),
    )

    assert config.retention_days == 14
    assert config.exclude_patterns == ["forms/misc/keep-*"]
    assert config.schedule_cron == "03:30"


def test_builder_rejects_bad_values():
    from medialife.builder import build_config, create_empty_config, run_daily_at
    from medialife.exceptions import ConfigurationError

    with pytest.raises(ConfigurationError):
        build_config(create_empty_config())

    with pytest.raises(ValueError):
        run_daily_at(create_empty_config(), "25:00")


def test_config_collects_every_error():
    from medialife.config import LifecycleConfig
    from medialife.exceptions import ConfigurationError

    with pytest.raises(ConfigurationError) as exc_info:
        LifecycleConfig(
            bucket="media-bucket",
            retention_days=-1,
            scan_prefixes=["private/"],
            delete_batch_size=5000,
        )

    assert len(exc_info.value.details["errors"]) == 3


def test_create_config_from_env(monkeypatch, temp_dir: Path):
    from medialife.env import create_config_from_env

    monkeypatch.setenv("S3_BUCKET", "media-bucket")
    monkeypatch.setenv("MEDIALIFE_DATA_PATH", str(temp_dir))
    monkeypatch.setenv("MEDIALIFE_RETENTION_DAYS", "45")
    monkeypatch.setenv("MEDIALIFE_ALLOWED_PREFIXES", "forms/, uploads/")
    monkeypatch.setenv("MEDIALIFE_MAX_FILES", "500")
    monkeypatch.setenv("MEDIALIFE_AUTO_DELETE", "no")

    config = create_config_from_env()

    assert config.bucket == "media-bucket"
    assert config.data_path == temp_dir
    assert config.retention_days == 45
    assert config.allowed_prefixes == ["forms/", "uploads/"]
    assert config.max_files_to_scan == 500
    assert config.auto_delete is False


@pytest.mark.parametrize(
    "name, value",
    [
        ("S3_BUCKET", None),
        ("MEDIALIFE_RETENTION_DAYS", "-3"),
        ("MEDIALIFE_MAX_FILES", "zero"),
        ("MEDIALIFE_AUTO_DELETE", "maybe"),
    ],
)
def test_create_config_from_env_rejects_bad_values(monkeypatch, name, value):
    from medialife.env import create_config_from_env
    from medialife.exceptions import ConfigurationError

    monkeypatch.setenv("S3_BUCKET", "media-bucket")
    if value is None:
        monkeypatch.delenv(name)
    else:
        monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        create_config_from_env()


def test_profiles(test_config):
    from medialife.env import aggressive_cleanup, compliance_friendly, safe_defaults

    safe = safe_defaults(test_config.with_updates(retention_days=3, max_files_to_scan=50000))
    assert safe.auto_delete is False
    assert safe.retention_days == 30
    assert safe.max_files_to_scan == 1000

    aggressive = aggressive_cleanup(test_config)
    assert aggressive.auto_delete is True
    assert aggressive.retention_days == 7
    assert aggressive.max_files_to_scan == 10000

    compliant = compliance_friendly(test_config)
    assert compliant.auto_delete is False
    assert compliant.retention_days == 90
    assert "*/legal-hold/*" in compliant.exclude_patterns
