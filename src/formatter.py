"""Console side-channel rendering of envelopes: plain, colorized (ANSI), JSON."""

import json
import logging
from datetime import datetime, timezone

from src.models import Envelope, LogLevel, envelope_to_dict, plain_data

# ANSI color codes
COLORS = {
    LogLevel.DEBUG: "\033[90m",   # grey
    LogLevel.INFO: "\033[34m",    # blue
    LogLevel.WARN: "\033[33m",    # yellow
    LogLevel.ERROR: "\033[31m",   # red
}
BOLD = "\033[1m"
RESET = "\033[0m"

STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def iso_timestamp(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat(
        timespec="milliseconds"
    )


def format_text(envelope: Envelope) -> str:
    """``[time] [Category] message {data}``."""
    line = f"[{iso_timestamp(envelope.timestamp)}] [{envelope.category}] {envelope.message}"
    if envelope.data:
        line += " " + json.dumps(plain_data(envelope), default=str)
    return line


def format_color(envelope: Envelope) -> str:
    """format_text wrapped in the level's color; errors are bold."""
    color = COLORS.get(envelope.level, "")
    if envelope.level is LogLevel.ERROR:
        color = BOLD + color
    return f"{color}{format_text(envelope)}{RESET}"


def format_json(envelope: Envelope) -> str:
    return json.dumps(envelope_to_dict(envelope), default=str)


def stdlib_level(level: LogLevel) -> int:
    return STDLIB_LEVELS.get(level, logging.INFO)
