"""
Package Parser Service: Main Entry Point
=======================================
Starts the Flask-based import service together with its job scheduler.

Usage:
    python main.py                    # Default: 0.0.0.0:5000
    python main.py --port 8000        # Custom port
    python main.py --workers 4        # Concurrent import jobs
    python main.py --debug            # Debug mode
"""

import argparse
import logging

from packparser.database import get_db_path
from packparser.engine import ImportConfig
from packparser.server import app, create_app
from packparser.storage import get_data_dir

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Package Parser Service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=5000, help="Bind port")
    parser.add_argument("--workers", type=int, default=None,
                        help="Concurrent import jobs (default: PACKPARSER_MAX_CONCURRENT_JOBS or 2)")
    parser.add_argument("--debug", action="store_true", help="Debug mode")
    args = parser.parse_args()

    overrides = {"max_concurrent_jobs": args.workers} if args.workers else {}
    config = ImportConfig.from_env(**overrides)
    config.validate()

    # create_app() prepares storage + database and starts the scheduler
    create_app({"IMPORT_CONFIG": config})
    logger.info(f"Data dir: {get_data_dir(config.data_dir)}")
    logger.info(f"Database: {config.db_path or get_db_path()}")
    logger.info(
        f"Scheduler: {config.max_concurrent_jobs} workers, "
        f"normalizer {'enabled' if config.normalizer_url else 'disabled'}"
    )
    logger.info(f"Starting server on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=False)


if __name__ == "__main__":
    main()
