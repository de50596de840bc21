"""
Service integrations for VentBox matching backend.
"""

from .rtc_service import (
    RtcEngine,
    RtcEventHandler,
    RtcEngineRegistry,
    RtcSession,
    EngineHandle,
    TRANSIENT_ERROR_CODES,
    get_rtc_registry,
    configure_rtc_registry
)

from .token_service import TokenService

__all__ = [
    # RTC
    "RtcEngine",
    "RtcEventHandler",
    "RtcEngineRegistry",
    "RtcSession",
    "EngineHandle",
    "TRANSIENT_ERROR_CODES",
    "get_rtc_registry",
    "configure_rtc_registry",

    # Tokens
    "TokenService",
]
