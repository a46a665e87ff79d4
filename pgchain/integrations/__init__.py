# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI admin routes and lifespan.
"""

from pgchain.integrations.fastapi import (
    get_pgchain_state,
    pgchain_lifespan,
    register_pgchain_routes,
    verify_api_key,
)

__all__ = [
    "get_pgchain_state",
    "pgchain_lifespan",
    "register_pgchain_routes",
    "verify_api_key",
]
