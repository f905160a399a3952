"""Shared row-store logic for the local PermitStore implementations."""

import asyncio
import copy
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from permit_expediter.schemas.permit_case import PermitCaseStatus, utc_now_iso

logger = logging.getLogger(__name__)

PERMIT_CASES = "permit_cases"

# Cases in these states never satisfy a reuse lookup
EXCLUDED_FROM_REUSE = (PermitCaseStatus.VOID.value,)


def matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    """True if the row satisfies every equality filter."""
    if not filters:
        return True
    for column, expected in filters.items():
        actual = row.get(column)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def sort_rows(rows: List[Dict[str, Any]], order_by: str, descending: bool) -> List[Dict[str, Any]]:
    """Sort rows on a column; rows missing the column always go last."""
    present = [r for r in rows if r.get(order_by) is not None]
    absent = [r for r in rows if r.get(order_by) is None]
    present.sort(key=lambda r: r[order_by], reverse=descending)
    return present + absent


class TableStore:
    """PermitStore over ``{table: [rows]}`` with pluggable load/save.

    Subclasses implement ``_load_table`` and ``_save_table``. Backends doing
    file I/O set ``blocking_io`` so those run in a worker thread. All
    operations take one ``asyncio.Lock`` so the conditional case insert is
    atomic with respect to other builds in the same process.
    """

    blocking_io = False

    def __init__(self):
        self._lock = asyncio.Lock()

    def _load_table(self, table: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _save_table(self, table: str, rows: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    async def _load(self, table: str) -> List[Dict[str, Any]]:
        if self.blocking_io:
            return await asyncio.to_thread(self._load_table, table)
        return self._load_table(table)

    async def _save(self, table: str, rows: List[Dict[str, Any]]) -> None:
        if self.blocking_io:
            await asyncio.to_thread(self._save_table, table, rows)
        else:
            self._save_table(table, rows)

    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for row in await self._load(table):
                if row.get("id") == row_id:
                    return copy.deepcopy(row)
        return None

    async def find(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [r for r in await self._load(table) if matches(r, filters)]
        if order_by:
            rows = sort_rows(rows, order_by, descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            return await self._insert_locked(table, row)

    async def _insert_locked(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", utc_now_iso())
        rows = await self._load(table)
        if any(r.get("id") == stored["id"] for r in rows):
            raise ValueError(f"Duplicate id in {table}: {stored['id']}")
        rows.append(stored)
        await self._save(table, rows)
        logger.debug(f"Inserted {table}/{stored['id']}")
        return copy.deepcopy(stored)

    async def update(
        self, table: str, row_id: str, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            rows = await self._load(table)
            for row in rows:
                if row.get("id") == row_id:
                    row.update(copy.deepcopy(changes))
                    await self._save(table, rows)
                    return copy.deepcopy(row)
        return None

    async def insert_permit_case_if_absent(
        self, row: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        key = {
            "tenant_id": row.get("tenant_id"),
            "job_id": row.get("job_id"),
            "estimate_id": row.get("estimate_id"),
        }
        async with self._lock:
            existing = [
                r
                for r in await self._load(PERMIT_CASES)
                if matches(r, key) and r.get("status") not in EXCLUDED_FROM_REUSE
            ]
            if existing:
                newest = sort_rows(existing, "created_at", descending=True)[0]
                return copy.deepcopy(newest), False
            return await self._insert_locked(PERMIT_CASES, row), True
