"""
project: Play By Mail
module: __init__.py
License: MIT

Flask application factory and core extensions setup.

This module wires together the Flask app, SQLAlchemy, Flask-Login, the
scanner registry and the durable job queue. Configuration is sourced from
environment variables with reasonable defaults for development. A local
`instance/` directory is used for SQLite and other runtime data.
"""

import logging
import os
import uuid
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy

# Load .env if present so `SECRET_KEY`, `DATABASE_URL`, etc. can be supplied
# without exporting shell variables during development.
load_dotenv()

app = Flask(__name__, instance_relative_config=True)

try:
    os.makedirs(app.instance_path, exist_ok=True)
except OSError:
    # Read-only deployments supply DATABASE_URL explicitly
    pass

secret_key = os.getenv("SECRET_KEY", "dev-secret-change-me")
database_url = os.getenv("DATABASE_URL")

# During pytest runs, isolate to a separate test database
if not database_url:
    is_pytest = bool(os.getenv("PYTEST_CURRENT_TEST"))
    db_filename = "pbm_test.db" if is_pytest else "pbm.db"
    db_path = Path(app.instance_path) / db_filename
    database_url = f"sqlite:///{db_path.as_posix()}"


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


app.config.update(
    SECRET_KEY=secret_key,
    SQLALCHEMY_DATABASE_URI=database_url,
    SQLALCHEMY_TRACK_MODIFICATIONS=False,
    # Scanner / vision service
    PBM_SCANNER_BACKEND=os.getenv("PBM_SCANNER_BACKEND", "vision"),
    PBM_VISION_URL=os.getenv("PBM_VISION_URL", "http://127.0.0.1:8089/v1/extract"),
    PBM_VISION_API_KEY=os.getenv("PBM_VISION_API_KEY", ""),
    PBM_SCAN_TIMEOUT_SECONDS=float(os.getenv("PBM_SCAN_TIMEOUT_SECONDS", "30")),
    PBM_RENDER_TIMEOUT_SECONDS=float(os.getenv("PBM_RENDER_TIMEOUT_SECONDS", "30")),
    PBM_MIN_SCAN_QUALITY=float(os.getenv("PBM_MIN_SCAN_QUALITY", "0.3")),
    PBM_MAX_SCAN_BYTES=int(os.getenv("PBM_MAX_SCAN_BYTES", str(10 * 1024 * 1024))),
    # Job queue
    PBM_JOB_MAX_ATTEMPTS=int(os.getenv("PBM_JOB_MAX_ATTEMPTS", "8")),
    PBM_JOB_BACKOFF_BASE_SECONDS=float(os.getenv("PBM_JOB_BACKOFF_BASE_SECONDS", "2")),
)

engine_opts = {}
if database_url.startswith("sqlite:///"):
    engine_opts["connect_args"] = {
        "timeout": 10,  # busy timeout (seconds) for sqlite
        "check_same_thread": False,  # request threads and the worker loop share the file
    }
db = SQLAlchemy(app, session_options={"expire_on_commit": False}, engine_options=engine_opts)
login_manager = LoginManager(app)


@login_manager.request_loader
def load_account_from_request(req):
    """Resolve ``Authorization: Bearer <token>`` to an Account (or None)."""
    from pbm.models.models import Account

    header = req.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return Account.find_by_token(token.strip())


@login_manager.unauthorized_handler
def _unauthorized():
    return (
        jsonify(
            {
                "error": {
                    "kind": "Unauthorized",
                    "code": "Unauthorized",
                    "message": "missing or invalid bearer token",
                    "correlation_id": getattr(g, "correlation_id", None),
                }
            }
        ),
        401,
    )


# SQLite pragmatic tuning (WAL + busy timeout); a no-op for other drivers.
from sqlalchemy import event  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: D401
    if type(dbapi_connection).__module__.split(".")[0] not in ("sqlite3", "pysqlite2"):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=10000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Scanner registry and job queue are built from the config above.
from pbm.jobs.queue import JobQueue  # noqa: E402
from pbm.rendering.renderer import PillowPdfRenderer  # noqa: E402
from pbm.scanners.registry import build_registry  # noqa: E402

job_queue = JobQueue(
    max_attempts=app.config["PBM_JOB_MAX_ATTEMPTS"],
    backoff_base=app.config["PBM_JOB_BACKOFF_BASE_SECONDS"],
)
app.extensions["pbm_scanners"] = build_registry(app.config)
app.extensions["pbm_jobs"] = job_queue
app.extensions["pbm_renderer"] = PillowPdfRenderer()

# Register HTTP blueprints
from pbm.routes.games_api import bp_games  # noqa: E402
from pbm.routes.images_api import bp_images  # noqa: E402
from pbm.routes.instances_api import bp_instances  # noqa: E402
from pbm.routes.turn_sheets_api import bp_turn_sheets  # noqa: E402

app.register_blueprint(bp_games)
app.register_blueprint(bp_instances)
app.register_blueprint(bp_turn_sheets)
app.register_blueprint(bp_images)

# Import job workers so their decorators register with the queue (side-effect)
from pbm.jobs import workers as _job_workers  # noqa: F401,E402

# Route map debug output. Suppress with PBM_SUPPRESS_ROUTE_MAP=1.
if not (_env_flag("PBM_SUPPRESS_ROUTE_MAP") or app.config.get("SUPPRESS_ROUTE_MAP")):
    print("Registered routes:")
    print(app.url_map)


def create_app():
    """Return the Flask app instance, ensuring the schema exists."""
    from pbm import models as _models  # noqa: F401

    with app.app_context():
        db.create_all()
    return app


# --- Correlation ids and error envelopes -------------------------------------
from pbm.errors import PbmError  # noqa: E402


@app.before_request
def _assign_correlation_id():
    g.correlation_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    # An app context can outlive one request (tests, CLI); resolve the bearer token afresh
    g.pop("_login_user", None)


@app.after_request
def _echo_correlation_id(response):
    cid = getattr(g, "correlation_id", None)
    if cid:
        response.headers["X-Request-ID"] = cid
    return response


@app.teardown_request
def _rollback_open_transaction(exc):
    # Anything not explicitly committed by the operation is discarded.
    db.session.rollback()


@app.errorhandler(PbmError)
def handle_pbm_error(e: PbmError):
    db.session.rollback()
    body = e.to_dict()
    body["correlation_id"] = getattr(g, "correlation_id", None)
    return jsonify({"error": body}), e.http_status


@app.errorhandler(404)
def not_found(e):
    return (
        jsonify(
            {
                "error": {
                    "kind": "NotFound",
                    "code": "NotFound",
                    "message": "resource not found",
                    "correlation_id": getattr(g, "correlation_id", None),
                }
            }
        ),
        404,
    )


@app.errorhandler(405)
def method_not_allowed(e):
    return (
        jsonify(
            {
                "error": {
                    "kind": "BadRequest",
                    "code": "MethodNotAllowed",
                    "message": "method not allowed",
                    "correlation_id": getattr(g, "correlation_id", None),
                }
            }
        ),
        405,
    )


# Error handling: log details, return only an opaque id
@app.errorhandler(500)
def internal_error(e):
    db.session.rollback()
    error_id = getattr(g, "correlation_id", None) or uuid.uuid4().hex[:8]
    logging.exception("Unhandled exception (id=%s)", error_id)
    return (
        jsonify({"error": {"kind": "Internal", "code": "Internal", "correlation_id": error_id}}),
        500,
    )
