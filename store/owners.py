"""Owner lookup and pointer persistence over the declared owning columns."""

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence

import sqlalchemy as sa
from databases import Database

from config import OwningColumn
from store.database import owning_table
from store.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OwningRecord:
    """A row referencing a video file, as seen at lookup time."""

    owning_column: OwningColumn
    row_id: int
    source_value: Optional[str]
    current_pointer: Optional[str]

    @property
    def table(self) -> str:
        return self.owning_column.table

    @classmethod
    def from_mapping(cls, owning_column: OwningColumn, row: Mapping[str, Any]) -> "OwningRecord":
        return cls(
            owning_column=owning_column,
            row_id=int(row["id"]),
            source_value=row[owning_column.source_column],
            current_pointer=row[owning_column.pointer_column],
        )

    def describe(self) -> str:
        return f"{self.owning_column.table}#{self.row_id}"


class OwnerRepository:
    """Reads and updates owning rows for the configured owning columns.

    Matching is a case-insensitive substring match of the filename against the
    source column. The first hit wins, trying owning columns in declaration
    order and rows in ascending id order.
    """

    def __init__(self, database: Database, owning_columns: Sequence[OwningColumn]):
        self.database = database
        self.owning_columns = list(owning_columns)

    def _select(self, owning_column: OwningColumn):
        table = owning_table(owning_column)
        return sa.select(
            table.c.id,
            table.c[owning_column.source_column],
            table.c[owning_column.pointer_column],
        )

    async def find_owner(self, filename: str) -> Optional[OwningRecord]:
        """Return the first row whose source column contains ``filename``, or None."""
        escaped = filename.lower().replace("/", "//").replace("%", "/%").replace("_", "/_")
        pattern = f"%{escaped}%"
        for owning_column in self.owning_columns:
            table = owning_table(owning_column)
            source = table.c[owning_column.source_column]
            query = (
                self._select(owning_column)
                .where(sa.func.lower(source, type_=sa.String).like(pattern, escape="/"))
                .order_by(table.c.id)
                .limit(1)
            )
            row = await fetch_one_with_retry(self.database, query)
            if row is not None:
                return OwningRecord.from_mapping(owning_column, row)
        return None

    async def fetch_rows(self, owning_column: OwningColumn) -> List[OwningRecord]:
        """Return every row with a non-null source value, in id order."""
        table = owning_table(owning_column)
        query = (
            self._select(owning_column)
            .where(table.c[owning_column.source_column].is_not(None))
            .order_by(table.c.id)
        )
        rows = await fetch_all_with_retry(self.database, query)
        return [OwningRecord.from_mapping(owning_column, row) for row in rows]

    async def update_pointer(self, record: OwningRecord, pointer: str) -> None:
        """Write ``pointer`` to exactly the row identified by ``record``."""
        table = owning_table(record.owning_column)
        query = (
            table.update()
            .where(table.c.id == record.row_id)
            .values({record.owning_column.pointer_column: pointer})
        )
        await db_execute_with_retry(self.database, query)
        logger.info(f"Set {record.describe()}.{record.owning_column.pointer_column} = {pointer}")
