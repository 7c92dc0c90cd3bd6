"""Account-scoped durable key/value storage for ledger, job and artifact records.

Every account owns a document made of named tables. All reads and writes go
through a transaction that holds the account lock, so read-modify-write
sequences issued from several sessions of one account are serialized. A
transaction works on a private copy of the document and commits it only when
the block exits cleanly; an exception leaves the stored document untouched.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ax2_studio.core.locks import KeyedLocks

logger = logging.getLogger(__name__)

TABLES = ("balances", "flags", "reservations", "history", "jobs", "artifacts", "extension")

AccountState = Dict[str, Dict[str, Any]]


def empty_state() -> AccountState:
    return {table: {} for table in TABLES}


class AccountStore:
    def __init__(self, store: "LedgerStore", account_id: str) -> None:
        self._store = store
        self.account_id = account_id

    @contextmanager
    def transaction(self) -> Iterator["AccountStore"]:
        with self._store._locks.get(self.account_id):
            open_state = self._store._open_state(self.account_id)
            if open_state is not None:
                yield self
                return

            state = self._store._load(self.account_id)
            self._store._set_open_state(self.account_id, state)
            try:
                yield self
            finally:
                self._store._set_open_state(self.account_id, None)
            self._store._save(self.account_id, state)

    def get(self, table: str, key: str, default: Any = None) -> Any:
        with self.transaction():
            value = self._table(table).get(key)
            return copy.deepcopy(value) if value is not None else default

    def put(self, table: str, key: str, value: Any) -> None:
        with self.transaction():
            self._table(table)[key] = copy.deepcopy(value)

    def delete(self, table: str, key: str) -> bool:
        with self.transaction():
            return self._table(table).pop(key, None) is not None

    def keys(self, table: str) -> List[str]:
        with self.transaction():
            return list(self._table(table).keys())

    def values(self, table: str) -> List[Any]:
        with self.transaction():
            return [copy.deepcopy(v) for v in self._table(table).values()]

    def _table(self, table: str) -> Dict[str, Any]:
        if table not in TABLES:
            raise KeyError(f"unknown table {table}")
        state = self._store._open_state(self.account_id)
        return state.setdefault(table, {})


class LedgerStore:
    """Base class; subclasses provide ``_load``, ``_save`` and ``account_ids``."""

    def __init__(self) -> None:
        self._locks = KeyedLocks()
        self._open: dict[str, AccountState] = {}
        self._open_guard = threading.Lock()

    def account(self, account_id: str) -> AccountStore:
        return AccountStore(self, account_id)

    def account_ids(self) -> List[str]:
        raise NotImplementedError

    def _load(self, account_id: str) -> AccountState:
        raise NotImplementedError

    def _save(self, account_id: str, state: AccountState) -> None:
        raise NotImplementedError

    # The open state is only touched while the account lock is held.
    def _open_state(self, account_id: str) -> Optional[AccountState]:
        with self._open_guard:
            return self._open.get(account_id)

    def _set_open_state(self, account_id: str, state: Optional[AccountState]) -> None:
        with self._open_guard:
            if state is None:
                self._open.pop(account_id, None)
            else:
                self._open[account_id] = state


class InMemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        super().__init__()
        self._accounts: dict[str, AccountState] = {}

    def account_ids(self) -> List[str]:
        return list(self._accounts.keys())

    def _load(self, account_id: str) -> AccountState:
        state = self._accounts.get(account_id)
        return copy.deepcopy(state) if state is not None else empty_state()

    def _save(self, account_id: str, state: AccountState) -> None:
        self._accounts[account_id] = copy.deepcopy(state)


class JsonFileLedgerStore(LedgerStore):
    """One JSON document per account under ``root``, replaced atomically on commit."""

    def __init__(self, root: Path) -> None:
        super().__init__()
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def account_ids(self) -> List[str]:
        ids = []
        for path in sorted(self.root.glob("*.json")):
            try:
                ids.append(json.loads(path.read_text(encoding="utf-8"))["account_id"])
            except (OSError, ValueError, KeyError):
                logger.warning("Skipping unreadable ledger document %s", path)
        return ids

    def _path(self, account_id: str) -> Path:
        digest = hashlib.sha1(account_id.encode("utf-8")).hexdigest()
        return self.root / f"{digest}.json"

    def _load(self, account_id: str) -> AccountState:
        path = self._path(account_id)
        if not path.exists():
            return empty_state()
        payload = json.loads(path.read_text(encoding="utf-8"))
        state = empty_state()
        state.update(payload.get("tables", {}))
        return state

    def _save(self, account_id: str, state: AccountState) -> None:
        path = self._path(account_id)
        tmp = path.with_suffix(".json.tmp")
        payload = {"account_id": account_id, "tables": state}
        tmp.write_text(json.dumps(payload, ensure_ascii=False, default=str), encoding="utf-8")
        os.replace(tmp, path)


def build_store(backend: str, data_dir: Path) -> LedgerStore:
    if backend == "memory":
        return InMemoryLedgerStore()
    if backend == "file":
        return JsonFileLedgerStore(data_dir / "ledger")
    raise ValueError(f"unknown ledger backend: {backend}")
