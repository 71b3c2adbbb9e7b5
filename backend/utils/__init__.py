from .clock import Clock, ManualClock, system_clock, utcnow, to_iso, parse_iso
from .logger import setup_logging, get_logger, api_logger

__all__ = [
    # Clock
    "Clock",
    "ManualClock",
    "system_clock",
    "utcnow",
    "to_iso",
    "parse_iso",

    # Logger
    "setup_logging",
    "get_logger",
    "api_logger",
]
