"""
PlantVault - Main Entry Point

Loads settings, opens the configured storage backend explicitly and
runs the periodic expiry sweep until interrupted.
"""

import argparse
import logging
import sys
import time
from typing import List, Optional

from .auth import AuthService
from .config import Settings
from .logging_config import setup_logging
from .storage import create_storage

logger = logging.getLogger(__name__)


def build_service(settings: Settings) -> AuthService:
    """Wire an AuthService for the configured backend and initialize it."""
    service = AuthService(settings, create_storage(settings))
    service.initialize()
    return service


def run_sweeper(service: AuthService, interval_seconds: int,
                iterations: Optional[int] = None) -> None:
    """
    Run cleanup_expired() every interval_seconds.

    Args:
        service: Initialized service
        interval_seconds: Pause between sweeps
        iterations: Stop after this many sweeps (default: run forever)
    """
    completed = 0
    while iterations is None or completed < iterations:
        counts = service.cleanup_expired()
        logger.debug("Sweep %d finished: %s", completed + 1, counts)
        completed += 1
        if iterations is None or completed < iterations:
            time.sleep(interval_seconds)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for PlantVault."""
    parser = argparse.ArgumentParser(description="PlantVault authentication core")
    parser.add_argument('--env-file', default=None, help="Path to a .env file")
    parser.add_argument('--once', action='store_true', help="Run a single sweep and exit")
    parser.add_argument('--verify-log', action='store_true',
                        help="Replay the security ledger hash chain and exit")
    args = parser.parse_args(argv)

    settings = Settings.from_env(args.env_file)
    setup_logging(settings.log_level)

    for problem in settings.validate():
        logger.warning("Configuration: %s", problem)

    service = build_service(settings)
    try:
        if args.verify_log:
            result = service.verify_security_log()
            if result['valid']:
                logger.info("Security ledger intact (%d entries)", result['entries'])
                return 0
            logger.error("Security ledger broken at entry %s: %s",
                         result['broken_at'], result['reason'])
            return 1

        run_sweeper(service, settings.sweep_interval_seconds,
                    iterations=1 if args.once else None)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
