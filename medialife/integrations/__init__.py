# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI plugin and other framework integrations.
"""

from medialife.integrations.fastapi import (
    setup_media_cleanup_plugin,
    register_media_cleanup_routes,
    media_cleanup_lifespan,
    verify_api_key,
)

__all__ = [
    "setup_media_cleanup_plugin",
    "register_media_cleanup_routes",
    "media_cleanup_lifespan",
    "verify_api_key",
]
