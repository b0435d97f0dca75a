import os
import sys
import tempfile

import pytest

# Ensure repository root importable early
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# The app reads its configuration at import time
_DB_DIR = tempfile.mkdtemp(prefix="pbm-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'pbm_test.db')}"
os.environ["PBM_SCANNER_BACKEND"] = "fake"
os.environ["PBM_SUPPRESS_ROUTE_MAP"] = "1"
os.environ.setdefault("PBM_LOG_LEVEL", "warn")

from pbm import create_app, db, job_queue  # noqa: E402
from pbm.services import template_registry  # noqa: E402


@pytest.fixture(scope="session")
def test_app():
    app = create_app()
    app.config.update({"TESTING": True})
    return app


@pytest.fixture(autouse=True)
def _push_app_context(test_app):
    """Every test gets an app context and an empty schema.

    The job queue is global to the database, so leftovers from one test would
    otherwise be run by the next test's ``drain``.
    """
    ctx = test_app.app_context()
    ctx.push()
    db.session.remove()
    db.drop_all()
    db.create_all()
    template_registry._snapshot_cache.clear()
    try:
        yield
    finally:
        db.session.remove()
        ctx.pop()


@pytest.fixture()
def client(test_app):
    return test_app.test_client()


@pytest.fixture()
def jobs():
    return job_queue


@pytest.fixture()
def world():
    """A published three-location game with one manager-owned instance."""
    from tests.factories import create_world

    return create_world()


@pytest.fixture()
def started(world):
    """``world`` with two joined players and the instance started (turn 1 sheets printed)."""
    from tests.factories import join_player, print_pending_sheets, start

    join_player(world, "alice@example.com", "Alice")
    join_player(world, "bob@example.com", "Bob")
    start(world)
    print_pending_sheets(world)
    return world
