"""
core/log.py -- One place that configures the root logger.

Both entry points (the ASGI app in api/main.py and the CLI in main.py) call
configure_logging() so log lines look the same whether they come from a
migration run or from request handling.
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger. A no-op if handlers are already installed."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )
