# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Media Lifecycle FastAPI Integration - Admin cleanup API for FastAPI apps.

This module provides a complete integration with FastAPI including:
- Lifespan management (startup/shutdown)
- Protected admin endpoints for scans, cleanups and job history
- Scheduled audit runs
- Health checks
"""

import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, UTC
from typing import Any, List

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from pydantic import ValidationError as RequestBodyError

from medialife.config import LifecycleConfig
from medialife.core import (
    LifecycleState,
    cancel_cleanup_job,
    get_cleanup_job,
    get_metrics,
    initialize_lifecycle_state,
    list_cleanup_jobs,
    run_audit_cycle,
    run_cleanup,
    run_scan,
    shutdown_lifecycle_state,
)
from medialife.exceptions import (
    CleanupInProgressError,
    JobNotFoundError,
    JobStateError,
    MediaLifecycleError,
    ValidationError,
)
from medialife.jobs.state import JobStatus, JobType, TriggerSource

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)

SCHEDULED_JOB_ID = "medialife_scheduled_audit"


class CleanupRequest(BaseModel):
    """Body of POST /cleanup."""

    orphaned_files: List[str] = Field(default_factory=list)
    dry_run: bool = False
    executed_by: str | None = None


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the MEDIALIFE_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("MEDIALIFE_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="MEDIALIFE_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=401,
            detail="Invalid API key",
        )

    return True


def _internal_error() -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"},
    )


def _to_http(error: MediaLifecycleError) -> HTTPException | None:
    """Map known errors to an HTTP status; None means it is an internal failure."""
    if isinstance(error, ValidationError):
        return HTTPException(
            status_code=400,
            detail={"error": error.message, **error.details},
        )
    if isinstance(error, JobNotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, (JobStateError, CleanupInProgressError)):
        return HTTPException(status_code=409, detail=error.message)
    return None


def _parse_enum(enum_cls: Any, value: str | None, name: str) -> Any:
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise HTTPException(status_code=400, detail=f"Invalid {name} {value!r}; expected one of: {allowed}")


def register_media_cleanup_routes(
    app: FastAPI,
    config: LifecycleConfig,
    state: LifecycleState,
    prefix: str = "/admin/media-cleanup",
) -> None:
    """
    Register the media cleanup admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        config: Lifecycle configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/media-cleanup)
    """

    @app.get(f"{prefix}/scan", dependencies=[Depends(verify_api_key)])
    async def scan_for_orphans(
        prefixes: List[str] | None = Query(None),
        max_files: int | None = None,
        retention_days: int | None = None,
    ) -> Any:
        """
        Run a verification scan. Never deletes anything.

        Args:
            prefixes: Prefixes to scan (default: configured scan prefixes)
            max_files: Ceiling on enumerated objects
            retention_days: Minimum object age override
        """
        try:
            report = await run_scan(
                config,
                state,
                prefixes=prefixes,
                max_files=max_files,
                retention_days=retention_days,
                triggered_by=TriggerSource.API,
                executed_by="admin-api",
            )
        except MediaLifecycleError as e:
            mapped = _to_http(e)
            if mapped is None:
                logger.error("scan_request_failed", error=str(e))
                return _internal_error()
            raise mapped
        except Exception as e:
            logger.error("scan_request_failed", error=str(e), error_type=type(e).__name__)
            return _internal_error()

        return {
            "success": True,
            "job_id": report.job_id,
            "orphaned_files": [asdict(c) for c in report.candidates],
            "metrics": asdict(report.metrics),
            "truncated": report.truncated,
            "stale_records_marked": report.stale_records_marked,
        }

    @app.post(f"{prefix}/cleanup", dependencies=[Depends(verify_api_key)])
    async def cleanup_orphans(payload: dict = Body(...)) -> Any:
        """
        Delete an explicit list of orphaned keys.

        Body: {"orphaned_files": [...], "dry_run": false}
        """
        try:
            request = CleanupRequest.model_validate(payload)
        except RequestBodyError as e:
            raise HTTPException(status_code=400, detail=e.errors(include_url=False))

        try:
            report = await run_cleanup(
                config,
                state,
                request.orphaned_files,
                dry_run=request.dry_run,
                triggered_by=TriggerSource.API,
                executed_by=request.executed_by or "admin-api",
            )
        except MediaLifecycleError as e:
            mapped = _to_http(e)
            if mapped is None:
                logger.error("cleanup_request_failed", error=str(e))
                return _internal_error()
            raise mapped
        except Exception as e:
            logger.error("cleanup_request_failed", error=str(e), error_type=type(e).__name__)
            return _internal_error()

        return {"success": True, **asdict(report)}

    @app.delete(f"{prefix}/jobs/{{job_id}}", dependencies=[Depends(verify_api_key)])
    async def cancel_job_endpoint(job_id: str) -> Any:
        """
        Cancel a pending or running job.

        A delete batch already sent to storage still completes.
        """
        try:
            job = await cancel_cleanup_job(state, job_id, cancelled_by="admin-api")
        except MediaLifecycleError as e:
            mapped = _to_http(e)
            if mapped is None:
                logger.error("cancel_request_failed", job_id=job_id, error=str(e))
                return _internal_error()
            raise mapped
        except Exception as e:
            logger.error(
                "cancel_request_failed", job_id=job_id, error=str(e), error_type=type(e).__name__
            )
            return _internal_error()
        return {"success": True, "job_id": job.id, "status": job.status.value}

    @app.get(f"{prefix}/jobs", dependencies=[Depends(verify_api_key)])
    async def list_jobs_endpoint(
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        status: str | None = None,
        job_type: str | None = None,
    ) -> Any:
        """
        List jobs, newest first.

        Args:
            limit: Maximum number of jobs to return
            offset: Number of jobs to skip
            status: Filter by status
            job_type: Filter by type (verification, cleanup, audit)
        """
        status_filter = _parse_enum(JobStatus, status, "status")
        type_filter = _parse_enum(JobType, job_type, "job_type")
        try:
            jobs = await list_cleanup_jobs(
                state,
                limit=limit,
                offset=offset,
                status=status_filter,
                job_type=type_filter,
            )
        except Exception as e:
            logger.error("list_jobs_request_failed", error=str(e), error_type=type(e).__name__)
            return _internal_error()
        return {
            "jobs": [job.to_dict(include_items=False) for job in jobs],
            "limit": limit,
            "offset": offset,
        }

    @app.get(f"{prefix}/jobs/{{job_id}}", dependencies=[Depends(verify_api_key)])
    async def get_job_endpoint(job_id: str) -> Any:
        """Get one job including its itemized orphaned files."""
        try:
            job = await get_cleanup_job(state, job_id)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message)
        except Exception as e:
            logger.error(
                "get_job_request_failed", job_id=job_id, error=str(e), error_type=type(e).__name__
            )
            return _internal_error()
        return job.to_dict(include_items=True)

    @app.get(f"{prefix}/upload-metrics", dependencies=[Depends(verify_api_key)])
    async def get_upload_metrics(include_events: bool = False) -> dict:
        """
        Upload metrics for this process.

        Args:
            include_events: Also return the raw event ring
        """
        collector = state["upload_metrics"]
        if include_events:
            return collector.export_metrics()
        return {
            "summary": asdict(collector.get_metrics()),
            "session_id": collector.session_id,
        }

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_status() -> dict:
        """
        Get current lifecycle status.

        Returns last run time, run totals and the active safety settings.
        """
        scheduler = state["scheduler"]
        next_run = None
        if scheduler is not None:
            scheduled = scheduler.get_job(SCHEDULED_JOB_ID)
            if scheduled is not None and scheduled.next_run_time:
                next_run = scheduled.next_run_time.isoformat()

        return {
            "last_run_at": (
                state["last_run_at"].isoformat() if state["last_run_at"] else None
            ),
            "total_scans": state["total_scans"],
            "total_cleanups": state["total_cleanups"],
            "total_deleted": state["total_deleted"],
            "bucket": config.bucket,
            "allowed_prefixes": config.allowed_prefixes,
            "retention_days": config.retention_days,
            "auto_delete": config.auto_delete,
            "schedule_cron": config.schedule_cron,
            "next_scheduled_run": next_run,
        }

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies the metadata store and storage connectivity.
        """
        db_ok = state["db_path"].exists()

        storage_ok = False
        storage_error = None
        try:
            await state["storage"].list_objects(config.allowed_prefixes[0], max_keys=1)
            storage_ok = True
        except Exception as e:
            storage_error = str(e)

        status = "healthy"
        if not db_ok or not storage_ok:
            status = "degraded"
        if not db_ok and not storage_ok:
            status = "unhealthy"

        return {
            "status": status,
            "metadata_accessible": db_ok,
            "storage_reachable": storage_ok,
            "storage_error": storage_error,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/stats", dependencies=[Depends(verify_api_key)])
    async def get_stats() -> dict:
        """
        Aggregate job and metadata statistics.
        """
        metrics = await get_metrics(state)
        return {
            "total_scans": metrics.total_scans,
            "total_cleanups": metrics.total_cleanups,
            "total_deleted": metrics.total_deleted,
            "total_reclaimed_bytes": metrics.total_reclaimed_bytes,
            "total_reclaimed_mb": round(metrics.total_reclaimed_bytes / (1024 * 1024), 2),
            "last_run_at": (
                metrics.last_run_at.isoformat() if metrics.last_run_at else None
            ),
            "last_error": metrics.last_error,
            "jobs": metrics.jobs,
            "metadata": metrics.metadata,
        }


def setup_media_cleanup_plugin(
    app: FastAPI,
    config: LifecycleConfig,
    prefix: str = "/admin/media-cleanup",
) -> None:
    """
    Set up the media cleanup plugin with lifespan management.

    This is the main entry point for integrating medialife with a FastAPI
    app. It sets up:
    - Startup/shutdown lifecycle events
    - Admin endpoints
    - Scheduled audits if configured

    Args:
        app: FastAPI application
        config: Lifecycle configuration
        prefix: URL prefix for admin endpoints
    """
    # Store state in app.state for access across requests
    app.state.medialife_config = config
    app.state.medialife_state = None

    @app.on_event("startup")
    async def startup():
        """Initialize medialife on app startup."""
        logger.info(
            "medialife_plugin_starting",
            bucket=config.bucket,
            auto_delete=config.auto_delete,
        )

        state = await initialize_lifecycle_state(config)
        app.state.medialife_state = state

        register_media_cleanup_routes(app, config, state, prefix)

        if config.schedule_cron:
            _setup_scheduled_task(config, state)

        logger.info("medialife_plugin_started")

    @app.on_event("shutdown")
    async def shutdown():
        """Stop the scheduler on app shutdown."""
        logger.info("medialife_plugin_stopping")

        state = app.state.medialife_state
        if state:
            await shutdown_lifecycle_state(state)

        logger.info("medialife_plugin_stopped")


def _setup_scheduled_task(config: LifecycleConfig, state: LifecycleState) -> None:
    """Set up APScheduler for the daily audit."""
    try:
        scheduler = AsyncIOScheduler()

        # Parse HH:MM format
        hour, minute = map(int, config.schedule_cron.split(":"))

        async def scheduled_audit():
            """Run the scheduled audit cycle."""
            logger.info("scheduled_audit_starting", auto_delete=config.auto_delete)
            try:
                report = await run_audit_cycle(config, state)
                logger.info(
                    "scheduled_audit_completed",
                    job_id=report.job_id,
                    status=report.status,
                    found=report.orphaned_files_found,
                    deleted=report.deleted,
                )
            except Exception as e:
                logger.error("scheduled_audit_failed", error=str(e))

        scheduler.add_job(
            scheduled_audit,
            trigger=CronTrigger(hour=hour, minute=minute, timezone="UTC"),
            id=SCHEDULED_JOB_ID,
            replace_existing=True,
        )
        scheduler.start()
        state["scheduler"] = scheduler

        logger.info(
            "scheduler_started",
            schedule=config.schedule_cron,
            next_run=scheduler.get_job(SCHEDULED_JOB_ID).next_run_time.isoformat(),
        )

    except Exception as e:
        logger.error("scheduler_setup_failed", error=str(e))


@asynccontextmanager
async def media_cleanup_lifespan(app: FastAPI, config: LifecycleConfig):
    """
    Alternative lifespan context manager for FastAPI.

    Use this instead of setup_media_cleanup_plugin if you prefer the
    lifespan pattern:

        app = FastAPI(lifespan=lambda app: media_cleanup_lifespan(app, config))

    Args:
        app: FastAPI application
        config: Lifecycle configuration
    """
    logger.info("medialife_lifespan_starting")

    state = await initialize_lifecycle_state(config)
    app.state.medialife_state = state
    app.state.medialife_config = config

    register_media_cleanup_routes(app, config, state)

    if config.schedule_cron:
        _setup_scheduled_task(config, state)

    logger.info("medialife_lifespan_started")

    try:
        yield
    finally:
        logger.info("medialife_lifespan_stopping")
        await shutdown_lifecycle_state(state)
        logger.info("medialife_lifespan_stopped")


def get_lifecycle_state(app: FastAPI) -> LifecycleState:
    """
    Get medialife state from a FastAPI app.

    Useful for calling upload_media_files() from custom endpoints.

    Raises:
        RuntimeError: If medialife is not initialized
    """
    state = getattr(app.state, "medialife_state", None)
    if not state:
        raise RuntimeError("medialife not initialized. Call setup_media_cleanup_plugin first.")
    return state


def get_lifecycle_config(app: FastAPI) -> LifecycleConfig:
    """
    Get medialife config from a FastAPI app.

    Raises:
        RuntimeError: If medialife is not initialized
    """
    config = getattr(app.state, "medialife_config", None)
    if not config:
        raise RuntimeError("medialife not initialized. Call setup_media_cleanup_plugin first.")
    return config
