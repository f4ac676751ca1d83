"""Admin key check for privileged routes."""
from __future__ import annotations

import hmac
import os
from typing import Optional

from fastapi import Header, HTTPException, status

ADMIN_KEY_HEADER = "x-admin-key"


def _get_env_setting(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"{name} environment variable must be set to use admin routes.")
    return value


def _get_admin_key() -> str:
    return _get_env_setting("DESIGN_SERVER_ADMIN_KEY")


def check_admin_key(supplied: Optional[str]) -> None:
    """Raise 403 unless ``supplied`` matches the configured admin key."""

    expected = _get_admin_key()
    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin key")


def require_admin(x_admin_key: Optional[str] = Header(None, alias=ADMIN_KEY_HEADER)) -> None:
    check_admin_key(x_admin_key)
