"""Play By Mail CLI entry point.

Provides subcommands for running the HTTP server, the background job
worker, and a one-off deadline sweep. Accepts configuration via flags and
environment variables, with optional .env loading.

Run `python run.py --help` for details.
"""

import argparse
import os
import signal
import sys
from textwrap import dedent

from dotenv import load_dotenv


def _load_version() -> str:
    try:
        with open("VERSION", "r", encoding="utf-8") as f:
            return f.read().strip()
    except OSError:
        return "0.1.0"


__version__ = _load_version()


def parse_args(argv: list[str]) -> argparse.Namespace:
    description = """
    Play By Mail Game Server

    Run the HTTP API, the background job worker that advances turns and
    renders sheets, or a single deadline sweep. Configuration can be provided
    via CLI flags or environment variables. If both are present, CLI flags
    take precedence.
    """

    epilog = dedent(
        """
        Environment variables:
          HOST                  Bind address for the web server (default: 0.0.0.0)
          PORT                  Port for the web server (default: 5000)
          DATABASE_URL          SQLAlchemy database URI (default: sqlite:///instance/pbm.db)
          PBM_SCANNER_BACKEND   vision | fake (default: vision)
          PBM_VISION_URL        Vision service endpoint

        Examples:
          # Run the server on the default host and port
          python run.py server

          # Run the server on a custom port against PostgreSQL
          python run.py server --port 8080 --db postgresql+psycopg://pbm@localhost/pbm

          # Load variables from .env then run the job worker
          python run.py --env-file .env worker

          # Enqueue advancement for every instance past its deadline
          python run.py check-deadlines
        """
    )

    parser = argparse.ArgumentParser(
        prog="pbm",
        description=dedent(description),
        epilog=epilog,
        formatter_class=argparse.RawTextHelpFormatter,
    )

    parser.add_argument(
        "--env-file",
        dest="env_file",
        help="Path to a .env file to load before processing flags",
    )

    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=["debug", "info", "warn", "error"],
        default=None,
        help="Override PBM_LOG_LEVEL for this run",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Play By Mail Server {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # server subcommand
    server_parser = subparsers.add_parser(
        "server",
        help="Run the HTTP API server",
        formatter_class=argparse.RawTextHelpFormatter,
        description="Run the Flask HTTP API server",
    )
    server_parser.add_argument(
        "--host",
        default=None,
        help="Host interface to bind (default: env HOST or 0.0.0.0)",
    )
    server_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: env PORT or 5000)",
    )
    server_parser.add_argument(
        "--db",
        dest="db_uri",
        default=None,
        help="Database URI (default: env DATABASE_URL or sqlite:///instance/pbm.db)",
    )
    server_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable Flask debug mode with verbose error pages",
    )
    server_parser.set_defaults(command="server")

    # worker subcommand
    worker_parser = subparsers.add_parser(
        "worker",
        help="Run the background job worker",
        formatter_class=argparse.RawTextHelpFormatter,
        description=(
            "Run queued jobs (advance-if-ready, render-sheet, join-player)"
            " and sweep deadlines every minute."
        ),
    )
    worker_parser.add_argument(
        "--db",
        dest="db_uri",
        default=None,
        help="Database URI (default: env DATABASE_URL or sqlite:///instance/pbm.db)",
    )
    worker_parser.add_argument(
        "--poll-interval",
        dest="poll_interval",
        type=float,
        default=2.0,
        help="Seconds to sleep when the queue is empty (default: 2)",
    )
    worker_parser.add_argument(
        "--once",
        action="store_true",
        help="Run one batch of due jobs and exit",
    )
    worker_parser.set_defaults(command="worker")

    # check-deadlines subcommand
    deadlines_parser = subparsers.add_parser(
        "check-deadlines",
        help="Enqueue advancement for instances past their turn deadline",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    deadlines_parser.add_argument(
        "--db",
        dest="db_uri",
        default=None,
        help="Database URI (default: env DATABASE_URL or sqlite:///instance/pbm.db)",
    )
    deadlines_parser.set_defaults(command="check-deadlines")

    # If no subcommand provided, default to server
    if len(argv) == 0:
        argv = ["server"]

    args = parser.parse_args(argv)
    return args


def main(argv: list[str]) -> int:
    # Load .env if requested (default .env otherwise; no error if missing)
    args = parse_args(argv)
    if getattr(args, "env_file", None):
        load_dotenv(args.env_file)
    else:
        load_dotenv()

    # Resolve configuration from CLI flags or env vars
    host = getattr(args, "host", None) or os.getenv("HOST", "0.0.0.0")
    port = int(getattr(args, "port", None) or os.getenv("PORT", "5000"))
    db_uri_cli = getattr(args, "db_uri", None)

    # Make DATABASE_URL available to the Flask app BEFORE importing it
    if db_uri_cli:
        os.environ["DATABASE_URL"] = db_uri_cli
    db_banner = db_uri_cli or os.getenv("DATABASE_URL") or "auto (instance/pbm.db)"

    def handle_sigint(sig, frame):
        print("\n[INFO] Shutting down...")
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_sigint)

    mode = (getattr(args, "command", None) or "server").lower()

    # Import entrypoints only after environment is ready
    from pbm.logging_utils import set_level
    from pbm.server import check_deadlines_once, run_worker, start_server

    if getattr(args, "log_level", None):
        set_level(args.log_level)

    print("=" * 60)
    print(f"  Play By Mail {__version__}  mode={mode}  db={db_banner}")
    print("=" * 60)

    if mode == "server":
        start_server(host=host, port=port, debug=bool(getattr(args, "debug", False)))
    elif mode == "worker":
        run_worker(poll_interval=args.poll_interval, once=args.once)
    elif mode == "check-deadlines":
        count = check_deadlines_once()
        print(f"[INFO] {count} instance(s) past their deadline")
    return 0


def console_main() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(console_main())
