# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with medialife Integration.

This example demonstrates how to accept form media through the batch
upload surface and expose the admin cleanup API with a daily audit.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    AWS_ACCESS_KEY_ID: AWS access key
    AWS_SECRET_ACCESS_KEY: AWS secret key
    S3_ENDPOINT_URL: S3-compatible endpoint (optional, e.g. R2)
    MEDIALIFE_ADMIN_API_KEY: API key for admin endpoints
"""

import os
from pathlib import Path
from typing import List

from fastapi import FastAPI, File, Form, UploadFile

from medialife.builder import (
    allow_prefixes,
    build_config,
    create_empty_config,
    enable_auto_delete,
    exclude_patterns,
    retain_objects_older_than,
    run_daily_at,
    with_bucket,
    with_data_path,
    with_endpoint,
    with_region,
    with_upload_settings,
)
from medialife.integrations.fastapi import get_lifecycle_config, get_lifecycle_state, setup_media_cleanup_plugin
from medialife.upload.surface import FileItem, upload_media_files

# Create FastAPI app
app = FastAPI(
    title="Forms with medialife",
    description="Example application demonstrating media uploads and cleanup",
    version="1.0.0",
)


def create_medialife_config():
    """
    Create the lifecycle configuration from environment variables.

    This uses the functional builder pattern for clean, composable configuration.
    """
    bucket = os.getenv("S3_BUCKET", "my-app-media")
    region = os.getenv("AWS_REGION", "us-east-1")
    endpoint_url = os.getenv("S3_ENDPOINT_URL")
    data_path = Path(os.getenv("MEDIALIFE_DATA_PATH", "/var/lib/medialife"))

    config = create_empty_config()

    config = with_bucket(config, bucket)
    config = with_region(config, region)
    if endpoint_url:
        config = with_endpoint(config, endpoint_url)
    config = with_data_path(config, data_path)

    # Only form media may ever be scanned or deleted
    config = allow_prefixes(config, ["forms/"])
    config = exclude_patterns(config, ["forms/misc/keep-*"])

    config = retain_objects_older_than(config, 30)

    # Two files per batch, up to five attempts each
    config = with_upload_settings(config, batch_size=2, max_retries=4)

    # Daily audit at 3:00 AM UTC
    config = run_daily_at(config, "03:00")

    # IMPORTANT: scheduled audits only report unless this is set explicitly
    if os.getenv("MEDIALIFE_AUTO_DELETE", "false").lower() == "true":
        config = enable_auto_delete(config)

    return build_config(config)


# Initialize configuration
try:
    medialife_config = create_medialife_config()
except Exception as e:
    print(f"Failed to create medialife config: {e}")
    # Use minimal config for development
    medialife_config = build_config(
        with_data_path(
            with_bucket(create_empty_config(), "test-bucket"),
            Path("./medialife_data"),
        )
    )

# Setup medialife plugin
setup_media_cleanup_plugin(app, medialife_config)


# ============================================================================
# Application Routes
# ============================================================================


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Welcome to Forms with medialife",
        "docs": "/docs",
        "medialife_admin": "/admin/media-cleanup/health",
    }


@app.post("/api/form-media")
async def upload_form_media(
    files: List[UploadFile] = File(...),
    submission_id: str | None = Form(None),
):
    """Upload a submission's media through the batch processor."""
    items = [
        FileItem(name=f.filename or "file", data=await f.read(), content_type=f.content_type)
        for f in files
    ]
    result = await upload_media_files(
        get_lifecycle_config(app),
        get_lifecycle_state(app),
        items,
        submission_id=submission_id,
    )
    return {
        "success": result.success,
        "files": [
            {"id": r.file_id, "url": r.url, "name": r.file_name} for r in result.successful_uploads
        ],
        "errors": [
            {"name": e.file_name, "error": e.error, "category": e.category.value}
            for e in result.failed_uploads
        ],
    }


# ============================================================================
# medialife Admin Endpoints (auto-registered by plugin)
# ============================================================================
#
# The following endpoints are automatically registered by setup_media_cleanup_plugin:
#
# GET    /admin/media-cleanup/scan            - Verification scan (never deletes)
# POST   /admin/media-cleanup/cleanup         - Delete an explicit key list
# GET    /admin/media-cleanup/jobs            - List jobs
# GET    /admin/media-cleanup/jobs/{job_id}   - One job with itemized files
# DELETE /admin/media-cleanup/jobs/{job_id}   - Cancel a job
# GET    /admin/media-cleanup/upload-metrics  - Upload metrics
# GET    /admin/media-cleanup/status          - Current status
# GET    /admin/media-cleanup/health          - Health check
# GET    /admin/media-cleanup/stats           - Aggregate statistics
#
# All admin endpoints require: Authorization: Bearer <MEDIALIFE_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
