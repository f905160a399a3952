"""Storage protocols for the permit build pipeline.

The pipeline only talks to these interfaces. Local implementations live in
this package (in-memory and JSON-file tables, file-backed object storage);
a database or cloud bucket backend can be swapped in without touching the
pipeline.
"""

from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable


@runtime_checkable
class PermitStore(Protocol):
    """Row store over named tables.

    Rows are plain dicts with a string ``id``. Filters are equality matches;
    a list/tuple/set filter value matches any of its members.
    """

    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one row by id, or None."""
        ...

    async def find(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch rows matching all filters.

        Args:
            table: Table name.
            filters: Column -> value equality filters.
            order_by: Column to sort on (None values sort last).
            descending: Sort direction.
            limit: Maximum number of rows returned.
        """
        ...

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row, assigning ``id``/``created_at`` when absent. Returns the stored row."""
        ...

    async def update(
        self, table: str, row_id: str, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Apply changes to a row. Returns the updated row, or None if absent."""
        ...

    async def insert_permit_case_if_absent(
        self, row: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        """Insert a permit case unless a non-void case exists for (tenant, job, estimate).

        Returns:
            (case row, created). On conflict the newest existing case is
            returned with ``created=False``.
        """
        ...


@runtime_checkable
class ObjectStorage(Protocol):
    """Bucket/path blob storage with signed download URLs."""

    async def upload(
        self, bucket: str, path: str, data: bytes, content_type: str
    ) -> int:
        """Store bytes (overwriting). Returns the stored size in bytes."""
        ...

    async def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        """Return a URL granting read access for ``expires_in`` seconds."""
        ...
