"""
Structured logging configuration for VentBox matching backend.
"""

import sys
import logging
from typing import Optional
from loguru import logger
from config import settings, Settings


class InterceptHandler(logging.Handler):
    """
    Intercept standard logging messages and redirect to loguru.
    """

    def emit(self, record):
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging(config: Optional[Settings] = None):
    """Configure structured logging for the application."""
    config = config or settings

    # Remove default loguru handler
    logger.remove()

    if config.environment == "production":
        log_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level> | "
            "{extra}"
        )
    else:
        log_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        )

    logger.add(
        sys.stderr,
        format=log_format,
        level=config.log_level,
        colorize=True,
        backtrace=True,
        diagnose=config.debug,
    )

    # Add file handler for production
    if config.environment == "production":
        logger.add(
            config.log_file,
            format=log_format,
            level="INFO",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            serialize=True,  # JSON output
        )

    # Intercept standard logging
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("fastapi").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger.info(f"Logging configured for {config.environment.value} environment")


def get_logger(name: str):
    """Get a logger instance with a specific name."""
    return logger.bind(module=name)


class SessionLogger:
    """
    Logger carrying session or actor context.

    The session id and any extra fields (role, user_id, component) land in the
    record's ``extra`` and therefore in the production JSON sink.
    """

    def __init__(self, session_id: str, **context):
        self.session_id = session_id
        self.context = context
        self.logger = logger.bind(session_id=session_id, **context)

    def bind(self, **context) -> "SessionLogger":
        """Child logger for the same session with additional fields."""
        return SessionLogger(self.session_id, **{**self.context, **context})

    def debug(self, message: str, **kwargs):
        self.logger.debug(message, **kwargs)

    def info(self, message: str, **kwargs):
        self.logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        self.logger.error(message, **kwargs)
