"""
project: Play By Mail
module: server.py
License: MIT

Server and worker bootstrap.

Exposes helpers to start the HTTP server, run the background job worker
loop, and run a single deadline sweep. Each entry point ensures the schema
exists and configures logging first.
"""

import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler

from pbm import app, db, job_queue
from pbm.jobs.queue import CHECK_DEADLINES
from pbm.logging_utils import get_logger
from pbm.services.turn_advancement import enqueue_due_advancements
from pbm.utils.clock import utcnow

log = get_logger("pbm.server")

DEADLINE_SWEEP_SECONDS = 60


def _prepare():
    from pbm import models as _models  # noqa: F401

    with app.app_context():
        db.create_all()
    _configure_logging()


def start_server(host="0.0.0.0", port=5000, debug: bool = False):  # pragma: no cover (runtime only)
    """Start the HTTP server after making sure the tables exist."""
    _prepare()
    try:
        print(f"[INFO] Starting HTTP server on {host}:{port}")
        app.run(host=host, port=port, debug=debug, threaded=True)
    except KeyboardInterrupt:
        print("\n[INFO] Server stopped by user (Ctrl+C)")
        sys.exit(0)


def schedule_deadline_sweep(now=None):
    """Enqueue one check-deadlines job per sweep window (idempotent within the window)."""
    now = now or utcnow()
    window = int(now.timestamp()) // DEADLINE_SWEEP_SECONDS
    job = job_queue.enqueue(CHECK_DEADLINES, {}, idempotency_tag=f"check-deadlines:{window}")
    db.session.commit()
    return job


def run_worker(poll_interval: float = 2.0, once: bool = False):  # pragma: no cover (long running loop)
    """Run queued jobs forever, sweeping deadlines once per minute."""
    _prepare()
    print(f"[INFO] Job worker started (poll every {poll_interval}s)")
    with app.app_context():
        while True:
            schedule_deadline_sweep()
            ran = job_queue.run_pending()
            if once:
                return ran
            if not ran:
                time.sleep(poll_interval)


def check_deadlines_once() -> int:
    """Enqueue advancement for every overdue instance and return how many were found."""
    _prepare()
    with app.app_context():
        count = enqueue_due_advancements()
    log.info(event="deadline_sweep", overdue=count)
    return count


def _configure_logging():
    """Configure logging to both console and a rotating file in instance/.

    The file path will be instance/pbm.log. Retains a few backups to avoid growth.
    """
    log_dir = app.instance_path
    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError:
        return
    log_path = os.path.join(log_dir, "pbm.log")

    root = logging.getLogger()
    root.setLevel(logging.INFO)

    file_handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3)
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    # Avoid duplicate handlers if reconfigured
    for h in list(root.handlers):
        root.removeHandler(h)

    root.addHandler(file_handler)
    root.addHandler(console)
