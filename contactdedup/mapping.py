"""
LID mapping lookups.

The messaging session keeps one reverse-mapping file per known LID:

    <session_path>/lid-mapping-<lid>_reverse.json   ->  "15551234567"

The reconciler only needs ``lookup(lid)``; where the answer comes from
is up to the adapter.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional, Protocol


class MappingLookup(Protocol):
    """Read-only LID -> phone number lookup. ``None`` means unmapped."""

    def lookup(self, local_id: str) -> Optional[str]:
        ...


def normalize_phone(value: Any) -> Optional[str]:
    """Coerce a stored mapping value to a bare phone number, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported mapping value type: {type(value).__name__}")
    phone = value.split("@", 1)[0].strip()
    return phone or None


class FileLidMapping:
    """Reads the per-LID reverse mapping files from a session directory."""

    def __init__(self, session_path: Path):
        self.session_path = Path(session_path)

    def path_for(self, local_id: str) -> Path:
        return self.session_path / f"lid-mapping-{local_id}_reverse.json"

    def lookup(self, local_id: str) -> Optional[str]:
        mapping_file = self.path_for(local_id)
        if not mapping_file.exists():
            return None
        content = mapping_file.read_text(encoding="utf-8").strip()
        if not content:
            return None
        try:
            return normalize_phone(json.loads(content))
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed LID mapping file {mapping_file}: {e}") from e


class DictMapping:
    """In-memory mapping, also loadable from a single JSON object file."""

    def __init__(self, entries: Optional[Dict[str, str]] = None):
        self.entries = dict(entries or {})

    @classmethod
    def from_json_file(cls, path: Path) -> "DictMapping":
        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Mapping file must contain a JSON object: {path}")
        return cls({str(k): v for k, v in data.items()})

    def lookup(self, local_id: str) -> Optional[str]:
        return normalize_phone(self.entries.get(local_id))

    def __len__(self) -> int:
        return len(self.entries)
