"""JSON-file PermitStore for local workspaces.

Layout::

    {workspace}/tables/{table}.json    # JSON array of row objects

Writes go to ``{table}.json.tmp`` first and are moved into place, so a
crash never leaves a half-written table.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from permit_expediter.storage.tables import TableStore

logger = logging.getLogger(__name__)


class JsonFilePermitStore(TableStore):
    blocking_io = True

    def __init__(self, workspace_dir: Path):
        super().__init__()
        self.tables_dir = Path(workspace_dir) / "tables"

    def _table_path(self, table: str) -> Path:
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")
        return self.tables_dir / f"{table}.json"

    def _load_table(self, table: str) -> List[Dict[str, Any]]:
        path = self._table_path(table)
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            rows = json.load(f)
        if not isinstance(rows, list):
            raise ValueError(f"Table file {path} must contain a JSON array")
        return rows

    def _save_table(self, table: str, rows: List[Dict[str, Any]]) -> None:
        path = self._table_path(table)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(rows, f, indent=2, ensure_ascii=False, default=str)
            tmp_path.replace(path)
        except OSError as e:
            if tmp_path.exists():
                tmp_path.unlink()
            raise IOError(f"Failed to write table {table}: {e}") from e
        logger.debug(f"Wrote {len(rows)} rows to {path}")
