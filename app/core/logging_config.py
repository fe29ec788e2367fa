# app/core/logging_config.py
"""
Centralized logging configuration for the application.

Application loggers follow LOG_LEVEL; HTTP, database and scheduler
libraries are kept at WARNING.
"""

import logging
import os


def configure_logging():
    """
    Configure logging for the application.

    - App code: INFO (or DEBUG if LOG_LEVEL=DEBUG)
    - HTTP clients (httpx, urllib3, requests): WARNING only
    - Database and scheduler: WARNING only
    """

    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, log_level, logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )

    # Quiet noisy HTTP client loggers
    for name in ("httpx", "httpcore", "urllib3", "urllib3.connectionpool", "requests"):
        logging.getLogger(name).setLevel(logging.WARNING)

    # Quiet database and scheduler loggers
    for name in ("sqlalchemy", "sqlalchemy.engine", "asyncpg", "aiosqlite", "apscheduler"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("app").setLevel(level)
    logging.getLogger("__main__").setLevel(level)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at level: {log_level}")


# Auto-configure when module is imported
configure_logging()
