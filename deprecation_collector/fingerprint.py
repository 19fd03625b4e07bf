"""
fingerprint.py - Noise normalization and content digests.

Two events are "the same" deprecation when they differ only in data that
varies per request or per worker process. This module strips that noise and
hashes what is left into a stable digest, so that every worker in a fleet
computes the same key for the same logical event.

Usage:
    from deprecation_collector.fingerprint import compute_digest, normalize_text

    digest = compute_digest(digest_base(message, gem_line, app_line))
"""

from __future__ import annotations

import hashlib
import platform
import re
from typing import List, Optional, Sequence, Tuple

# Bump when normalization or composition changes; old digests then stop
# matching and records are re-reported once.
PROTOCOL_VERSION = 1

DIGEST_LENGTH = 32

# Upstream warnings sometimes embed unbounded request data in quotes.
QUOTED_LITERAL_RE = re.compile(r'"(?:[^"\\]|\\.)*"')

# repr() style; an apostrophe inside a word ("doesn't") does not open a literal.
SINGLE_QUOTED_LITERAL_RE = re.compile(r"(?<!\w)'(?:[^'\\]|\\.)*'")

# Generated template/code identifiers made unique per worker: foo__1733852578_742240
NUMERIC_SUFFIX_RE = re.compile(r"__\d+_\d+")

# Interactive shell locations: line numbers are meaningless across sessions.
REPL_SUBSTITUTIONS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"\((pry|irb|repl)\):\d+"), r"(\1)"),
    (re.compile(r"<stdin>:\d+"), "<stdin>"),
    (re.compile(r"<console>:\d+"), "<console>"),
    (re.compile(r"<ipython-input-\d+-[0-9a-f]+>(?::\d+)?"), "<ipython-input>"),
)


def runtime_id() -> str:
    """Identify the interpreter, e.g. ``cpython-3.12.1``."""
    return f"{platform.python_implementation().lower()}-{platform.python_version()}"


def normalize_traceline(line: Optional[str]) -> Optional[str]:
    """Collapse per-worker suffixes and REPL line numbers in a trace line."""
    if line is None:
        return None
    line = NUMERIC_SUFFIX_RE.sub("___", line)
    for pattern, replacement in REPL_SUBSTITUTIONS:
        line = pattern.sub(replacement, line)
    return line


def normalize_text(text: Optional[str]) -> str:
    """Full normalization used for digests: quoted literals, suffixes, REPL."""
    if not text:
        return ""
    text = QUOTED_LITERAL_RE.sub('""', text)
    text = SINGLE_QUOTED_LITERAL_RE.sub("''", text)
    return normalize_traceline(text) or ""


def strip_prefixes(
    message: str, traceline: Optional[str], prefixes: Sequence[str]
) -> Tuple[str, Optional[str]]:
    """Remove path prefixes from a traceline start and anywhere in a message."""
    for prefix in prefixes:
        if not prefix:
            continue
        if traceline is not None and traceline.startswith(prefix):
            traceline = traceline[len(prefix):]
        message = message.replace(prefix, "")
    return message, traceline


def digest_base(
    message: str,
    gem_traceline: Optional[str],
    app_traceline: Optional[str],
    custom_fingerprint: Optional[str] = None,
) -> str:
    """Build the composition string that gets hashed."""
    parts: List[str] = [
        str(PROTOCOL_VERSION),
        runtime_id(),
        normalize_text(message),
        normalize_text(gem_traceline),
        normalize_text(app_traceline),
    ]
    if custom_fingerprint is not None:
        parts.append(str(custom_fingerprint))
    return ":".join(parts)


def compute_digest(base: str) -> str:
    """Hash a composition string into a fixed-length hex digest."""
    return hashlib.sha256(base.encode("utf-8")).hexdigest()[:DIGEST_LENGTH]
