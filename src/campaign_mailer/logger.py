# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the campaign mailer.

Handlers, level and format are configured once by the entry point
(``logging.basicConfig(..., force=True)``); modules only ask for a named
logger here.

Example:
    Typical usage in a module::

        from campaign_mailer.logger import get_logger

        logger = get_logger("QueueProcessor")
        logger.info("Batch processed")
"""

import logging

DEFAULT_LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "CampaignMailer") -> logging.Logger:
    """Retrieve a logger bound to ``name``.

    Args:
        name: The logger name. Defaults to "CampaignMailer".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for an entry point (server or CLI)."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=DEFAULT_LOG_FORMAT,
        datefmt=DEFAULT_DATE_FORMAT,
        force=True,
    )
