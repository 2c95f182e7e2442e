"""Shared fixtures: an in-memory stand-in for the table store client."""

import fnmatch
import itertools
from typing import Any

import pytest

from grc_importer.errors import PersistenceError


class FakeStore:
    """Implements the ``StoreClient`` surface over plain dicts.

    ``fail_tables`` makes every write to the named tables raise
    ``PersistenceError``; ``fail_reads`` does the same for reads.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.fail_tables: set[str] = set()
        self.fail_reads: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self._ids = itertools.count(1)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def _matches(self, row: dict[str, Any], filters: dict[str, Any] | None, ilike: dict[str, str] | None) -> bool:
        for column, value in (filters or {}).items():
            if row.get(column) != value:
                return False
        for column, pattern in (ilike or {}).items():
            if not fnmatch.fnmatchcase(str(row.get(column, "")).lower(), pattern.lower()):
                return False
        return True

    def _check_write(self, table: str) -> None:
        if table in self.fail_tables:
            raise PersistenceError(f"Store error 500 on {table}: boom")

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        ilike: dict[str, str] | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("select", table))
        if table in self.fail_reads:
            raise PersistenceError(f"Store error 500 on {table}: boom")
        found = [dict(row) for row in self.rows(table) if self._matches(row, filters, ilike)]
        if order:
            column, _, direction = order.partition(".")
            found.sort(key=lambda row: str(row.get(column, "")), reverse=direction == "desc")
        return found[:limit] if limit is not None else found

    async def select_one(self, table: str, **kwargs: Any) -> dict[str, Any] | None:
        rows = await self.select(table, limit=1, **kwargs)
        return rows[0] if rows else None

    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("insert", table))
        self._check_write(table)
        row = {"id": f"{table}-{next(self._ids)}", **values}
        self.rows(table).append(row)
        return dict(row)

    async def update(self, table: str, filters: dict[str, Any], values: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append(("update", table))
        self._check_write(table)
        updated = []
        for row in self.rows(table):
            if self._matches(row, filters, None):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def upsert(self, table: str, values: dict[str, Any], on_conflict: list[str]) -> dict[str, Any]:
        self.calls.append(("upsert", table))
        self._check_write(table)
        if not on_conflict:
            raise PersistenceError(f"Upsert on {table} requires an explicit conflict key")
        key = {column: values.get(column) for column in on_conflict}
        for row in self.rows(table):
            if self._matches(row, key, None):
                row.update(values)
                return dict(row)
        return await self.insert(table, values)

    async def delete(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append(("delete", table))
        kept, removed = [], []
        for row in self.rows(table):
            (removed if self._matches(row, filters, None) else kept).append(row)
        self.tables[table] = kept
        return removed


@pytest.fixture
def store():
    """Return an empty in-memory store."""
    return FakeStore()
