"""
models.py - Transport format for dump / import.

A dump is a JSON array of decoded records, each carrying its digest:

    [{"digest": "9f2c...", "message": "...", "realm": "warning", "count": 3, ...}]

Only the digest is required; every other field is carried through as-is.
Digests are not re-derived on import.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import ImportDumpError


class DumpedDeprecation(BaseModel):
    """One record of a dump. Unknown fields are kept."""

    model_config = ConfigDict(extra="allow")

    digest: str = Field(..., min_length=1, description="Content digest of the record.")


_DUMP_ADAPTER = TypeAdapter(List[DumpedDeprecation])


def parse_dump(blob: Union[str, bytes, List[Dict[str, Any]]]) -> Dict[str, Dict[str, Any]]:
    """Validate a dump and key its records by digest.

    Args:
        blob: JSON text, or an already parsed list of record dicts.

    Returns:
        Mapping digest -> record without the digest field.

    Raises:
        ImportDumpError: If the blob is not JSON, not a list, or a record
            lacks a digest.
    """
    if isinstance(blob, (str, bytes)):
        try:
            blob = json.loads(blob)
        except ValueError as e:
            raise ImportDumpError(f"dump is not valid JSON: {e}") from e

    try:
        records = _DUMP_ADAPTER.validate_python(blob)
    except ValidationError as e:
        raise ImportDumpError(f"every dumped record needs a digest: {e}") from e

    by_digest: Dict[str, Dict[str, Any]] = {}
    for record in records:
        data = record.model_dump()
        digest = data.pop("digest")
        by_digest[digest] = data
    return by_digest
