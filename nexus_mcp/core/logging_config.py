"""
Logging setup

Everything goes to stderr: when the proxy runs as a stdio MCP server, stdout
is the protocol channel.
"""

import logging
import sys
from typing import Optional

import structlog


class ColoredFormatter(logging.Formatter):
    """ANSI-coloured log formatter"""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
        'RESET': '\033[0m'      # Reset
    }

    def format(self, record):
        log_color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        reset_color = self.COLORS['RESET']
        formatted = super().format(record)
        return f"{log_color}{formatted}{reset_color}"


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(level: str = "INFO", enable_colors: bool = True, log_file: Optional[str] = None) -> None:
    """Configure the stdlib root logger and route structlog through it."""

    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    if enable_colors and sys.stderr.isatty():
        formatter = ColoredFormatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    else:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            root_logger.warning("Could not open log file %s: %s", log_file, e)
        else:
            file_handler.setLevel(log_level)
            file_handler.setFormatter(logging.Formatter(
                LOG_FORMAT + ' - %(pathname)s:%(lineno)d',
                datefmt=DATE_FORMAT,
            ))
            root_logger.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"], drop_missing=True),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("mcp").setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging initialised at %s", logging.getLevelName(log_level))
