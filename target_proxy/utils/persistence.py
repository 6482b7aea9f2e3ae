from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml


class YamlFileStore:
    """YAML document on disk, replaced atomically on every write."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def load_mapping(self) -> dict[str, Any]:
        """Return the document root, ``{}`` for a missing or empty file.

        Raises ``ValueError`` when the root is not a mapping and
        ``yaml.YAMLError`` when the file does not parse.
        """
        if not self.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValueError(f"Expected a YAML mapping in '{self.path}'.")
        return payload

    def write_mapping(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False, allow_unicode=True)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(OSError):
                temp_path.unlink(missing_ok=True)
            raise
