"""Security helpers for the bundle admin API."""

from __future__ import annotations

import os
from typing import Set, Tuple

from fastapi import Header, HTTPException, status


def _parse_keys(raw: str) -> Set[str]:
    return {key.strip() for key in raw.split(",") if key.strip()}


def load_api_keys() -> Tuple[str | None, Set[str]]:
    """Return the primary API key and the set of allowed keys."""

    primary = os.getenv("API_KEY")
    allowed = _parse_keys(os.getenv("API_KEYS", ""))
    if primary:
        allowed.add(primary)
    return primary, allowed


def require_api_key(
    x_api_key: str | None = Header(default=None, alias="x-api-key"),
) -> str | None:
    """Require a matching API key header when enabled via env."""

    if os.getenv("REQUIRE_API_KEY", "0") != "1":
        return x_api_key

    _primary, allowed_keys = load_api_keys()
    if not allowed_keys or x_api_key not in allowed_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid api key",
        )

    return x_api_key


__all__ = ["load_api_keys", "require_api_key"]
