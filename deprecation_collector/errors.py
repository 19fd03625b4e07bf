# deprecation_collector/errors.py
"""Exception hierarchy for the collector and its storage backends."""

from __future__ import annotations


class CollectorError(Exception):
    """Base class for all collector errors."""


class ConfigurationError(CollectorError, ValueError):
    """Invalid or unknown configuration option."""


class StorageConfigurationError(ConfigurationError):
    """Storage handle does not look like what the backend expects.

    Raised at assignment time so a misconfigured process fails during
    setup instead of on its first flush.
    """


class ImportDumpError(CollectorError, ValueError):
    """Dump blob could not be imported (bad JSON, missing digests)."""


class CollectedDeprecationError(CollectorError):
    """Raised for every collected event when raise_on_deprecation is set."""

    def __init__(self, message: str):
        super().__init__(f"Deprecation: {message}")
        self.deprecation_message = message
