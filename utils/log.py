# Copyright (C) 2026 grodz
#
# This file is part of Aquabot.
#
# Aquabot is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Logging setup.

All modules log through loguru's ``logger``. setup_logging() installs a single
stderr sink with short, aligned level labels and routes the standard library
``logging`` records (discord.py) into loguru so everything shares one format.
"""

import logging
import sys

from loguru import logger

# 4-character level labels for aligned output
LEVEL_NAMES = {
    'TRACE': 'TRCE',
    'DEBUG': 'DBUG',
    'INFO': 'INFO',
    'NOTICE': 'NOTE',
    'SUCCESS': 'GOOD',
    'WARNING': 'WARN',
    'ERROR': 'FAIL',
    'CRITICAL': 'CRIT',
}

# settings.yaml logging.level -> minimum loguru level
VERBOSITY = {
    "minimal": "NOTICE",
    "verbose": "INFO",
    "debug": "DEBUG",
}

# Between INFO (20) and WARNING (30)
NOTICE_LEVEL = 25


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller outside the logging module so loguru reports the right origin
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def register_levels() -> None:
    """Add the NOTICE level if it does not exist yet."""
    try:
        logger.level("NOTICE")
    except ValueError:
        logger.level("NOTICE", no=NOTICE_LEVEL, color="<cyan><bold>")


def _format(record) -> str:
    record["extra"]["short_level"] = LEVEL_NAMES.get(record["level"].name, record["level"].name[:4])
    fmt = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> "
        "[<level>{extra[short_level]}</level>] "
        "<cyan>{name}</cyan>: <level>{message}</level>\n"
    )
    if record["exception"]:
        fmt += "{exception}\n"
    return fmt


def setup_logging(level: str = "verbose") -> str:
    """Configure loguru and intercept stdlib logging.

    Args:
        level: "minimal", "verbose" or "debug" (unknown values act as "verbose")

    Returns:
        The loguru level name used as the sink threshold
    """
    register_levels()
    threshold = VERBOSITY.get(level.lower(), VERBOSITY["verbose"])

    logger.remove()
    logger.add(sys.stderr, level=threshold, format=_format, backtrace=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Reduce discord.py noise unless debugging
    library_level = logging.DEBUG if threshold == "DEBUG" else logging.WARNING
    logging.getLogger('discord').setLevel(library_level)

    return threshold
