"""Logger module for the reconciler service."""

import os

from logging_utils.config import setup_service_logger

logger = setup_service_logger(
    "reconciler-service",
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE") or None,
)

__all__ = ["logger"]
