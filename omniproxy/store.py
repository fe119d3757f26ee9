from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from omniproxy.accounts import Account, AccountRegistry
from omniproxy.utils.persistence import YamlFileStore


class AccountStore:
    """Reads and writes the ``accounts`` list of the accounts YAML file.

    Saving is always explicit: callers persist ``registry.snapshot()`` after a
    mutation, the registry itself never touches the disk.
    """

    def __init__(self, path: str | Path) -> None:
        self._file = YamlFileStore(path)

    @property
    def path(self) -> Path:
        return self._file.path

    def load(self) -> list[Account]:
        raw = self._file.load_mapping()
        entries = raw.get("accounts") or []
        if not isinstance(entries, list):
            raise ValueError(f"Expected 'accounts' list in '{self.path}'.")
        accounts: list[Account] = []
        for position, entry in enumerate(entries):
            try:
                accounts.append(Account.model_validate(entry))
            except ValidationError as exc:
                raise ValueError(
                    f"Invalid account entry #{position} in '{self.path}': {exc}"
                ) from exc
        return accounts

    def load_registry(self) -> AccountRegistry:
        return AccountRegistry(self.load())

    def save(self, accounts: Iterable[Account]) -> None:
        payload: dict[str, Any] = {
            "accounts": [
                account.model_dump(mode="json", exclude_none=True) for account in accounts
            ]
        }
        self._file.write(payload, sort_keys=False)
