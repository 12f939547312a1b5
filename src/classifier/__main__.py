"""Classifier worker CLI entry point.

This module is invoked when running `python -m src.classifier`. The process is
normally spawned by ClassifierWorkerSupervisor rather than run by hand.
"""

import argparse
import logging
import os
import sys

from src.classifier.worker import BACKENDS, create_backend, run_worker


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the worker.

    stdout carries protocol responses, so logs always go to stderr.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="ASL classifier worker - line-delimited JSON over stdin/stdout"
    )
    parser.add_argument(
        "--backend",
        type=str,
        default=os.getenv("CLASSIFIER_BACKEND", "mock"),
        choices=sorted(BACKENDS),
        help="Classifier backend to load (default: mock)",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (default: INFO)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the classifier worker."""
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    logger.info("Starting classifier worker", extra={"backend": args.backend})

    try:
        return run_worker(create_backend(args.backend))
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Worker failed with error", extra={"error": str(e)})
        return 1


if __name__ == "__main__":
    sys.exit(main())
