"""Row and instance locks that fail fast with ``Busy``.

PostgreSQL gets the real thing:
  * ``row_lock`` issues ``SELECT ... FOR UPDATE NOWAIT``; lock-not-available
    (SQLSTATE 55P03) becomes ``Busy``.
  * ``instance_lock`` takes ``pg_try_advisory_xact_lock`` on a 64-bit key
    derived from the instance id; a false result becomes ``Busy``.
  Both are released by the database when the transaction ends.

Other dialects (SQLite in development and tests) fall back to a
process-local, non-blocking lock table keyed by (namespace, id). The key is
held until the ``with`` block exits, and every caller commits inside the
block.

Either way, an exception escaping the block rolls the session back before
the lock is released so a half-written unit of work is never visible.
"""

from __future__ import annotations

import hashlib
import threading
from contextlib import contextmanager

from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError

from pbm import db
from pbm.errors import Busy, NotFound
from pbm.logging_utils import get_logger

log = get_logger("pbm.locks")

_LOCK_NOT_AVAILABLE = "55P03"

_held: set[tuple[str, str]] = set()
_held_guard = threading.Lock()


def _is_postgres() -> bool:
    return db.engine.dialect.name == "postgresql"


def _try_local(key: tuple[str, str]) -> bool:
    with _held_guard:
        if key in _held:
            return False
        _held.add(key)
        return True


def _release_local(key: tuple[str, str]):
    with _held_guard:
        _held.discard(key)


def _sqlstate(exc: OperationalError):
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def advisory_key(value: str) -> int:
    """Signed 64-bit key for ``pg_try_advisory_xact_lock``."""
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


@contextmanager
def row_lock(model, row_id: str):
    """Load ``model`` row ``row_id`` locked for update; yield it.

    Raises ``Busy`` if another transaction holds it and ``NotFound`` if the
    row does not exist.
    """
    key = (model.__tablename__, str(row_id))
    local = not _is_postgres()
    if local and not _try_local(key):
        log.info(event="row_lock_busy", table=key[0], id=key[1])
        raise Busy(f"{key[0]} {row_id} is being processed, retry shortly", details={"id": row_id})
    try:
        stmt = select(model).where(model.id == row_id)
        if not local:
            stmt = stmt.with_for_update(nowait=True)
        try:
            row = db.session.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
        except OperationalError as exc:
            if _sqlstate(exc) == _LOCK_NOT_AVAILABLE:
                db.session.rollback()
                log.info(event="row_lock_busy", table=key[0], id=key[1])
                raise Busy(f"{key[0]} {row_id} is being processed, retry shortly", details={"id": row_id}) from exc
            raise
        if row is None:
            raise NotFound(f"{key[0]} {row_id} not found")
        yield row
    except BaseException:
        db.session.rollback()
        raise
    finally:
        if local:
            _release_local(key)


@contextmanager
def instance_lock(game_instance_id: str):
    """Serialise work on one game instance; distinct instances never contend."""
    key = ("game_instance_advisory", str(game_instance_id))
    local = not _is_postgres()
    if local:
        if not _try_local(key):
            raise Busy("game instance is already being advanced", details={"game_instance_id": game_instance_id})
    else:
        acquired = db.session.execute(
            text("SELECT pg_try_advisory_xact_lock(:key)"), {"key": advisory_key(game_instance_id)}
        ).scalar()
        if not acquired:
            raise Busy("game instance is already being advanced", details={"game_instance_id": game_instance_id})
    try:
        yield
    except BaseException:
        db.session.rollback()
        raise
    finally:
        if local:
            _release_local(key)
