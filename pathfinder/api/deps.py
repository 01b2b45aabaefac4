"""
pathfinder.api.deps — FastAPI dependency injection
=====================================================

Authentication happens upstream; the gateway forwards the caller's id in
the ``X-User-Id`` header.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import Engine

from pathfinder.config import PathfinderConfig, load_config
from pathfinder.database.engine import create_db_engine


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> PathfinderConfig:
    return load_config()


def get_overflow_threshold(
    config: Annotated[PathfinderConfig, Depends(get_config)],
) -> int:
    return config.batch_overflow_threshold


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Caller identity.  Raises 401 when the header is missing or blank."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing X-User-Id header")
    return x_user_id.strip()
