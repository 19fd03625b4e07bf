"""
deprecation.py - The aggregated event record.

A Deprecation is built from one raw event (message + call stack + realm). It
keeps two representative trace lines instead of the full stack:

- gem_traceline: the first frame outside the instrumentation shim, usually
  the library code that emitted the warning
- app_traceline: the first frame inside the application (relative path or
  under app_root, and not in site-packages)

Traces are ordered most recent call first, like ``traceback.extract_stack()``
reversed.
"""

from __future__ import annotations

import os
import platform
import socket
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .fingerprint import (
    compute_digest,
    digest_base,
    normalize_traceline,
    strip_prefixes,
)

# Frames from this package are the shim itself, never the interesting caller.
PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_SHIM_MARKERS = (PACKAGE_DIR + os.sep,)

THIRD_PARTY_MARKERS = ("/site-packages/", "/dist-packages/")


def render_frame(frame: Any) -> str:
    """Render one trace frame as ``path:lineno:in name``.

    Strings pass through unchanged; FrameSummary, FrameInfo and similar
    objects are formatted from their attributes.
    """
    if isinstance(frame, str):
        return frame
    filename = getattr(frame, "filename", None)
    if filename is None:
        return str(frame)
    name = getattr(frame, "name", None) or getattr(frame, "function", None) or "?"
    return f"{filename}:{getattr(frame, 'lineno', 0)}:in {name}"


def root_prefix(app_root: Optional[str]) -> Optional[str]:
    """``app_root`` with a trailing separator, or None for an unset or filesystem root.

    A root prefix would match every absolute path.
    """
    if not app_root:
        return None
    stripped = app_root.rstrip(os.sep)
    if not stripped:
        return None
    return stripped + os.sep


def render_trace(trace: Optional[Iterable[Any]]) -> List[str]:
    if not trace:
        return []
    return [render_frame(frame) for frame in trace]


class Deprecation:
    """One logical recurring event, coalesced within a flush window."""

    def __init__(
        self,
        message: str,
        realm: Optional[str] = None,
        trace: Optional[Iterable[Any]] = None,
        cleanup_prefixes: Sequence[str] = (),
        app_root: Optional[str] = None,
        save_full_backtrace: bool = False,
        shim_markers: Sequence[str] = DEFAULT_SHIM_MARKERS,
        revision: Optional[str] = None,
    ):
        lines = render_trace(trace)
        self.realm = realm
        self.revision = revision
        self.occurrences = 0
        self.first_timestamp = int(time.time())
        self.context: Any = None
        self._custom_fingerprint: Optional[str] = None
        self._digest: Optional[str] = None

        app_root_prefix = root_prefix(app_root)
        gem_line = self._find_gem_traceline(lines, shim_markers)
        app_line = self._find_app_traceline(lines, app_root_prefix, shim_markers)

        message, gem_line = strip_prefixes(str(message), gem_line, cleanup_prefixes)
        self.message = message
        self.gem_traceline = normalize_traceline(gem_line)
        self.app_traceline = normalize_traceline(app_line)
        self.full_backtrace: Optional[List[str]] = lines if save_full_backtrace else None

    @staticmethod
    def _find_gem_traceline(lines: List[str], shim_markers: Sequence[str]) -> str:
        for line in lines:
            if not any(marker in line for marker in shim_markers):
                return line
        return lines[0] if lines else ""

    @staticmethod
    def _find_app_traceline(
        lines: List[str], app_root_prefix: Optional[str], shim_markers: Sequence[str]
    ) -> Optional[str]:
        for line in lines:
            if any(marker in line for marker in THIRD_PARTY_MARKERS):
                continue
            if any(marker in line for marker in shim_markers):
                continue
            if not line.startswith("/"):
                return line
            if app_root_prefix and line.startswith(app_root_prefix):
                return line[len(app_root_prefix):]
        return None

    @property
    def custom_fingerprint(self) -> Optional[str]:
        return self._custom_fingerprint

    @custom_fingerprint.setter
    def custom_fingerprint(self, value: Any) -> None:
        self._custom_fingerprint = None if value is None else str(value)
        self._digest = None

    def touch(self) -> None:
        self.occurrences += 1

    def ignored(self) -> bool:
        """Subclasses may drop records after construction."""
        return False

    @property
    def digest_base(self) -> str:
        return digest_base(
            self.message, self.gem_traceline, self.app_traceline, self._custom_fingerprint
        )

    @property
    def digest(self) -> str:
        if self._digest is None:
            self._digest = compute_digest(self.digest_base)
        return self._digest

    def as_dict(self) -> Dict[str, Any]:
        """Persisted shape; None values are dropped."""
        data = {
            "message": self.message,
            "realm": self.realm,
            "app_traceline": self.app_traceline,
            # only interesting when it points somewhere else
            "gem_traceline": (
                self.gem_traceline
                if self.gem_traceline and self.gem_traceline != self.app_traceline
                else None
            ),
            "full_backtrace": self.full_backtrace,
            "python_version": platform.python_version(),
            "hostname": socket.gethostname(),
            "revision": self.revision,
            "count": self.occurrences,
            # a worker that started later may still report an earlier time
            "first_timestamp": self.first_timestamp,
            "digest_base": self.digest_base,
            "context": self.context,
        }
        return {key: value for key, value in data.items() if value is not None}

    def __repr__(self) -> str:
        return (
            f"Deprecation(digest={self.digest!r}, realm={self.realm!r}, "
            f"occurrences={self.occurrences}, message={self.message[:60]!r})"
        )
