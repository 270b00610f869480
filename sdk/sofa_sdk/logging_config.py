"""
Logging setup for applications embedding Sofa SDK.

The SDK itself only creates module loggers; calling setup_logging() is
optional and meant for scripts and services that want a ready-made root
handler.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import SofaSettings


def setup_logging(settings: SofaSettings | None = None) -> None:
    """Configure logging based on configuration.

    Args:
        settings: SDK settings (loaded from environment when omitted)
    """
    settings = settings or SofaSettings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
