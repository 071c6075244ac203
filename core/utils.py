from __future__ import annotations

import asyncio
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

import uuid6

REPO_ROOT = Path(__file__).resolve().parents[1]


def set_loop_policy() -> None:
    if sys.platform.startswith("win"):
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


def new_id() -> str:
    """Time-ordered identifier (UUIDv7) for jobs and approvals."""
    return str(uuid6.uuid7())


def ensure_utc(value: datetime) -> datetime:
    """Normalize datetime to UTC.

    NOTE: Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(utc_now()) or ""
