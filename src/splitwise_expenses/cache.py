"""Per-user CSV cache of Splitwise expenses.

Each user has one file, ``<data_path>/<user_id>.csv``, holding one row
per (expense, participant) pair. The file's modification time is its
freshness timestamp: a file older than the TTL, or no file at all, is
rebuilt from the API before it is read.
"""

from __future__ import annotations

import csv
import enum
import logging
import os
import re
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import Future
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .client import Expense, Group
from .errors import ProtocolError, UpstreamAPIError

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 500.0
CSV_HEADER = ("Group", "Date", "Description", "Category", "Cost", "User", "Share")

_USER_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

T = TypeVar("T")


class Freshness(enum.Enum):
    MISSING = "missing"
    STALE = "stale"
    FRESH = "fresh"


class ExpenseLine(BaseModel):
    """One cached row, serialized to JSON with capitalized keys."""

    model_config = ConfigDict(populate_by_name=True)

    group: str = Field(alias="Group")
    date: str = Field(alias="Date")
    description: str = Field(alias="Description")
    category: str = Field(alias="Category")
    cost: str = Field(alias="Cost")
    user: str = Field(alias="User")
    share: str = Field(alias="Share")


class ExpenseSource(Protocol):
    def get_groups(self) -> list[Group]: ...

    def get_expenses(self, group_id: int) -> list[Expense]: ...


ClientOpener = Callable[[], AbstractContextManager[ExpenseSource]]


def strip_commas(value: str) -> str:
    return value.replace(",", "")


def expense_rows(group: Group, expenses: Iterable[Expense]) -> Iterator[tuple[str, ...]]:
    """Flatten a group's expenses into one row per participant."""
    group_name = strip_commas(group.name)
    for expense in expenses:
        description = strip_commas(expense.description)
        category = strip_commas(expense.category.name)
        cost = strip_commas(expense.cost)
        for share in expense.users:
            yield (
                group_name,
                expense.date,
                description,
                category,
                cost,
                strip_commas(share.user.first_name),
                strip_commas(share.owed_share),
            )


def read_expense_lines(path: Path) -> list[ExpenseLine]:
    """Parse a cache file, skipping the header and malformed rows."""
    lines: list[ExpenseLine] = []
    with path.open(newline="", encoding="utf-8") as f:
        for lineno, row in enumerate(csv.reader(f), start=1):
            if lineno == 1 and tuple(row[: len(CSV_HEADER)]) == CSV_HEADER:
                continue
            if len(row) < len(CSV_HEADER):
                logger.warning("Skipping malformed row %d in %s", lineno, path)
                continue
            lines.append(ExpenseLine(**dict(zip(CSV_HEADER, row))))
    return lines


class RegenerationCoalescer:
    """Run at most one job per key at a time.

    Callers arriving while a job for the same key is running wait for it
    and receive its result, or its exception.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inflight: dict[str, Future] = {}

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._inflight

    def run(self, key: str, job: Callable[[], T]) -> T:
        with self._lock:
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future

        if not leader:
            logger.debug("Joining in-flight regeneration for %s", key)
            return future.result()

        try:
            result = job()
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if not future.done():
                future.cancel()
            with self._lock:
                del self._inflight[key]


class ExpenseCache:
    """Freshness checks, regeneration and reads of the per-user files."""

    def __init__(
        self,
        data_path: str | Path,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.data_path = Path(data_path)
        self.ttl = ttl
        self._clock = clock
        self._coalescer = RegenerationCoalescer()

    def path_for(self, user_id: str) -> Path:
        """Return the cache file location for ``user_id``.

        Raises:
            ProtocolError: If the id is empty or not a plain identifier.
        """
        if not user_id or not _USER_ID_RE.match(user_id):
            raise ProtocolError(f"invalid user id {user_id!r}")
        return self.data_path / f"{user_id}.csv"

    def freshness(self, user_id: str) -> Freshness:
        try:
            modified = self.path_for(user_id).stat().st_mtime
        except FileNotFoundError:
            return Freshness.MISSING
        if self._clock() - modified > self.ttl:
            return Freshness.STALE
        return Freshness.FRESH

    def regenerate(self, user_id: str, api: ExpenseSource) -> int:
        """Rebuild the user's cache file from the API.

        The file is truncated once the group list has been fetched, then
        filled group by group. If a later fetch fails the rows written so
        far are kept and the file is marked stale.

        Args:
            user_id: Owner of the cache file.
            api: Client authorized as that user.

        Returns:
            Number of expense rows written.

        Raises:
            UpstreamAPIError: If fetching groups or expenses fails.
            OSError: If the file cannot be created or written.
        """
        path = self.path_for(user_id)
        groups = api.get_groups()

        written = 0
        try:
            self.data_path.mkdir(parents=True, exist_ok=True)
            with path.open("w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f, lineterminator="\n")
                writer.writerow([*CSV_HEADER, ""])
                for group in groups:
                    expenses = api.get_expenses(group.id)
                    for row in expense_rows(group, expenses):
                        writer.writerow([*row, ""])
                        written += 1
                    f.flush()
        except (UpstreamAPIError, OSError):
            logger.error("Regeneration for user %s stopped after %d rows", user_id, written)
            self._mark_stale(path)
            raise

        logger.info(
            "Regenerated cache for user %s: %d groups, %d rows", user_id, len(groups), written
        )
        return written

    def read(self, user_id: str) -> list[ExpenseLine]:
        """Read the cache file as it is, without checking freshness."""
        return read_expense_lines(self.path_for(user_id))

    def load(self, user_id: str, open_client: ClientOpener | None) -> list[ExpenseLine]:
        """Return the user's expenses, regenerating the cache first if needed.

        Args:
            user_id: Whose expenses to read.
            open_client: Opens an API client for the user; None when no
                session is available.

        Raises:
            ProtocolError: If a refresh is needed but ``open_client`` is None.
            UpstreamAPIError: If the refresh fails.
            OSError: If the cache file cannot be written or read.
        """
        state = self.freshness(user_id)
        if state is not Freshness.FRESH:
            if open_client is None:
                raise ProtocolError(f"cache for user {user_id} is {state.value} and no session is available")
            logger.info("Cache for user %s is %s, regenerating", user_id, state.value)
            self._coalescer.run(user_id, lambda: self._regenerate_with(user_id, open_client))
        return self.read(user_id)

    def _regenerate_with(self, user_id: str, open_client: ClientOpener) -> int:
        with open_client() as api:
            return self.regenerate(user_id, api)

    def _mark_stale(self, path: Path) -> None:
        try:
            os.utime(path, (0, 0))
        except OSError as e:
            logger.warning("Could not mark %s stale: %s", path, e)
