"""
log_sink.py - Storage that only logs.

Used when no shared store is configured: every occurrence goes to the
``deprecation_collector`` log at WARNING level, nothing is aggregated or
persisted.
"""

from __future__ import annotations

import logging

from ..deprecation import Deprecation
from .base import Storage

logger = logging.getLogger(__name__)


def format_log_message(message: str) -> str:
    if message.startswith("DEPRECAT"):
        return message
    return f"DEPRECATION: {message}"


class LogStorage(Storage):
    """Sink that logs every record, with no deduplication."""

    def __init__(self, log: logging.Logger = logger):
        super().__init__()
        self.log = log

    def store(self, deprecation: Deprecation) -> bool:
        deprecation.touch()
        self.log.warning("%s", format_log_message(deprecation.message))
        return True
