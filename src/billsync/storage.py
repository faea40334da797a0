# ABOUTME: Persistence for users, households, and bills
# ABOUTME: In-memory and JSON-file stores with a version guard against stale writes

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import BaseModel

from billsync.exceptions import StaleWriteError
from billsync.types import Bill, Household, User

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
CORRUPT_SUFFIX = ".corrupt"


class Store(ABC):
    """
    Storage interface used by the token broker and syncers.

    Bills and households are versioned: a save must carry the version that
    was loaded, otherwise StaleWriteError is raised. A successful save bumps
    the version on both the stored record and the caller's instance.
    """

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None: ...

    @abstractmethod
    async def get_users(self, user_ids: list[str]) -> list[User]: ...

    @abstractmethod
    async def find_user_by_remote_id(self, remote_id: str) -> User | None: ...

    @abstractmethod
    async def save_user(self, user: User) -> User: ...

    @abstractmethod
    async def get_household(self, household_id: str) -> Household | None: ...

    @abstractmethod
    async def save_household(self, household: Household) -> Household: ...

    @abstractmethod
    async def get_bill(self, bill_id: str) -> Bill | None: ...

    @abstractmethod
    async def list_bills(self, household_id: str) -> list[Bill]: ...

    @abstractmethod
    async def find_bill_by_remote_id(self, household_id: str, remote_expense_id: str) -> Bill | None: ...

    @abstractmethod
    async def save_bill(self, bill: Bill) -> Bill: ...

    @abstractmethod
    async def delete_bill(self, bill_id: str) -> bool: ...


def _check_version(kind: str, record_id: str, stored: Bill | Household | None, incoming_version: int) -> None:
    if stored is None:
        if incoming_version != 0:
            raise StaleWriteError(f"{kind} {record_id} no longer exists")
        return
    if stored.version != incoming_version:
        raise StaleWriteError(
            f"{kind} {record_id} was modified (expected version {incoming_version}, "
            f"found {stored.version})"
        )


class MemoryStore(Store):
    """Dict-backed store; returns deep copies so callers never alias state."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._households: dict[str, Household] = {}
        self._bills: dict[str, Bill] = {}

    async def get_user(self, user_id: str) -> User | None:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def get_users(self, user_ids: list[str]) -> list[User]:
        return [u.model_copy(deep=True) for uid in user_ids if (u := self._users.get(uid))]

    async def find_user_by_remote_id(self, remote_id: str) -> User | None:
        for user in self._users.values():
            if user.remote_id == remote_id:
                return user.model_copy(deep=True)
        return None

    async def save_user(self, user: User) -> User:
        self._users[user.id] = user.model_copy(deep=True)
        self._flush()
        return user

    async def get_household(self, household_id: str) -> Household | None:
        household = self._households.get(household_id)
        return household.model_copy(deep=True) if household else None

    async def save_household(self, household: Household) -> Household:
        _check_version("Household", household.id, self._households.get(household.id), household.version)
        household.version += 1
        self._households[household.id] = household.model_copy(deep=True)
        self._flush()
        return household

    async def get_bill(self, bill_id: str) -> Bill | None:
        bill = self._bills.get(bill_id)
        return bill.model_copy(deep=True) if bill else None

    async def list_bills(self, household_id: str) -> list[Bill]:
        bills = [b for b in self._bills.values() if b.household_id == household_id]
        bills.sort(key=lambda b: b.created_at, reverse=True)
        return [b.model_copy(deep=True) for b in bills]

    async def find_bill_by_remote_id(self, household_id: str, remote_expense_id: str) -> Bill | None:
        for bill in self._bills.values():
            if (
                bill.household_id == household_id
                and bill.sync_state.remote_expense_id == remote_expense_id
            ):
                return bill.model_copy(deep=True)
        return None

    async def save_bill(self, bill: Bill) -> Bill:
        _check_version("Bill", bill.id, self._bills.get(bill.id), bill.version)
        bill.version += 1
        self._bills[bill.id] = bill.model_copy(deep=True)
        self._flush()
        return bill

    async def delete_bill(self, bill_id: str) -> bool:
        removed = self._bills.pop(bill_id, None) is not None
        if removed:
            self._flush()
        return removed

    def _flush(self) -> None:
        """Hook for subclasses that persist after every write."""


class _StateFile(BaseModel):
    users: list[User] = []
    households: list[Household] = []
    bills: list[Bill] = []


class JsonFileStore(MemoryStore):
    """
    Store persisted as a single JSON document.

    The whole state is rewritten on each change and the file is kept
    readable only by the owner since it holds access tokens.
    """

    def __init__(self, data_dir: Path) -> None:
        super().__init__()
        self._data_dir = Path(data_dir).expanduser()
        self._path = self._data_dir / STATE_FILENAME
        self._load()

    def _load(self) -> None:
        """
        Load state from disk.

        An unreadable file is moved aside to state.json.corrupt rather than
        overwritten, so its records can be recovered by hand.
        """
        if not self._path.exists():
            return

        try:
            state = _StateFile.model_validate_json(self._path.read_text())
        except ValueError as e:
            corrupt_path = self._path.with_name(STATE_FILENAME + CORRUPT_SUFFIX)
            os.replace(self._path, corrupt_path)
            logger.error(f"State file {self._path} is invalid, moved to {corrupt_path}: {e}")
            return

        self._users = {u.id: u for u in state.users}
        self._households = {h.id: h for h in state.households}
        self._bills = {b.id: b for b in state.bills}
        logger.debug(
            f"Loaded {len(self._users)} users, {len(self._households)} households, "
            f"{len(self._bills)} bills from disk"
        )

    def _flush(self) -> None:
        self._data_dir.mkdir(parents=True, exist_ok=True)

        state = _StateFile(
            users=list(self._users.values()),
            households=list(self._households.values()),
            bills=list(self._bills.values()),
        )
        tmp_path = self._path.with_name(STATE_FILENAME + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(state.model_dump(mode="json"), f)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self._path)
