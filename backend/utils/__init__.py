"""
Utility modules for VentBox matching backend.
"""

from .logger import setup_logging, get_logger, SessionLogger
from .ids import (
    MonotonicMillis,
    generate_channel_name,
    generate_room_id,
    is_valid_channel_name,
    to_base36
)
from .text import make_preview_text, format_duration

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "SessionLogger",

    # Identifiers
    "MonotonicMillis",
    "generate_channel_name",
    "generate_room_id",
    "is_valid_channel_name",
    "to_base36",

    # Text
    "make_preview_text",
    "format_duration",
]
