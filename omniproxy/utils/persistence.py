from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml


class YamlFileStore:
    """YAML document on disk, replaced atomically on every write."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        with self.path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
        return default if payload is None else payload

    def load_mapping(self) -> dict[str, Any]:
        payload = self.load(default={})
        if not isinstance(payload, dict):
            raise ValueError(
                f"Expected YAML object in '{self.path}', found: {type(payload).__name__}"
            )
        return payload

    def write(self, payload: Any, *, sort_keys: bool = False) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=sort_keys, allow_unicode=True)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(OSError):
                temp_path.unlink(missing_ok=True)
            raise
