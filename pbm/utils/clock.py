"""Naive-UTC time and identifier helpers.

Timestamps are stored as naive UTC so SQLite and PostgreSQL round-trip them
identically.
"""

from __future__ import annotations

import datetime
import uuid


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())
