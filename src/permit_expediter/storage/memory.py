"""In-memory PermitStore, used by tests and dry runs."""

from typing import Any, Dict, Iterable, List, Optional

from permit_expediter.storage.tables import TableStore


class InMemoryPermitStore(TableStore):
    """Process-local table store.

    Args:
        seed: Optional initial rows per table.

    Example:
        store = InMemoryPermitStore({"jobs": [{"id": "j1", "tenant_id": "t1"}]})
        job = await store.get("jobs", "j1")
    """

    def __init__(self, seed: Optional[Dict[str, Iterable[Dict[str, Any]]]] = None):
        super().__init__()
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        for table, rows in (seed or {}).items():
            self._tables[table] = [dict(r) for r in rows]

    def _load_table(self, table: str) -> List[Dict[str, Any]]:
        return self._tables.setdefault(table, [])

    def _save_table(self, table: str, rows: List[Dict[str, Any]]) -> None:
        self._tables[table] = rows

    def rows(self, table: str) -> List[Dict[str, Any]]:
        """Direct (mutable) access to a table's rows."""
        return self._load_table(table)
