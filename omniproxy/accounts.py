from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from omniproxy.credentials import Credentials
from omniproxy.errors import AccountNotFoundError, DuplicateAccountError
from omniproxy.providers import Provider
from omniproxy.utils.locks import AtomicCounter, ReadWriteLock


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    provider: Provider
    credentials: Credentials

    @property
    def label(self) -> str:
        return f"{self.provider.value}:{self.name}"

    def is_valid(self, now: datetime | None = None) -> bool:
        return self.credentials.is_valid(now)

    def expires_at_display(self) -> str:
        return self.credentials.expires_at.strftime("%Y-%m-%d %H:%M")


class AccountRegistry:
    """In-memory account set with per-provider round-robin selection.

    Reads (``list``, ``count``, ``select``) share a read lock; ``add``,
    ``remove`` and ``update_credentials`` take the write lock. Rotation cursors
    live outside the lock and are never persisted, so rotation restarts from
    the first valid account in a new process.
    """

    def __init__(self, accounts: Iterable[Account] | None = None) -> None:
        self._lock = ReadWriteLock()
        self._accounts: list[Account] = []
        self._cursors: dict[Provider, AtomicCounter] = {
            provider: AtomicCounter() for provider in Provider
        }
        for account in accounts or []:
            self.add(account.provider, account.name, account.credentials)

    def add(self, provider: Provider, name: str, credentials: Credentials) -> Account:
        account = Account(name=name, provider=provider, credentials=credentials)
        with self._lock.write():
            if self._find_index(provider, name) is not None:
                raise DuplicateAccountError(provider.value, name)
            self._accounts.append(account)
        return account

    def remove(self, provider: Provider, name: str) -> None:
        with self._lock.write():
            index = self._find_index(provider, name)
            if index is None:
                raise AccountNotFoundError(provider.value, name)
            del self._accounts[index]

    def update_credentials(
        self, provider: Provider, name: str, credentials: Credentials
    ) -> Account:
        with self._lock.write():
            index = self._find_index(provider, name)
            if index is None:
                raise AccountNotFoundError(provider.value, name)
            updated = self._accounts[index].model_copy(update={"credentials": credentials})
            self._accounts[index] = updated
        return updated

    def get(self, provider: Provider, name: str) -> Account | None:
        with self._lock.read():
            index = self._find_index(provider, name)
            return self._accounts[index] if index is not None else None

    def list(self, provider: Provider) -> list[Account]:
        with self._lock.read():
            return [account for account in self._accounts if account.provider == provider]

    def snapshot(self) -> list[Account]:
        with self._lock.read():
            return list(self._accounts)

    def count(self, provider: Provider) -> int:
        with self._lock.read():
            return sum(1 for account in self._accounts if account.provider == provider)

    def is_empty(self) -> bool:
        with self._lock.read():
            return not self._accounts

    def select(self, provider: Provider, now: datetime | None = None) -> Account | None:
        with self._lock.read():
            valid = [
                account
                for account in self._accounts
                if account.provider == provider and account.is_valid(now)
            ]
        if not valid:
            return None
        index = self._cursors[provider].fetch_add(1) % len(valid)
        return valid[index]

    def _find_index(self, provider: Provider, name: str) -> int | None:
        for index, account in enumerate(self._accounts):
            if account.provider == provider and account.name == name:
                return index
        return None
