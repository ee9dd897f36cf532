"""
Database access for the owning tables.

The pipeline never creates or migrates the owning tables; it only needs to
read a video reference column and write an HLS pointer column. Each declared
owning column is described as a lightweight ``sa.table()`` so queries can be
built with SQLAlchemy Core without reflecting the schema.
"""

from typing import Dict, Tuple

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL, OwningColumn

# Create database instance - works with MySQL, PostgreSQL or SQLite
database = Database(DATABASE_URL)

_table_cache: Dict[Tuple[str, str, str], sa.TableClause] = {}


def owning_table(column: OwningColumn) -> sa.TableClause:
    """Return a table clause exposing ``id``, the source column and the pointer column."""
    key = (column.table, column.source_column, column.pointer_column)
    table = _table_cache.get(key)
    if table is None:
        table = sa.table(
            column.table,
            sa.column("id", sa.Integer),
            sa.column(column.source_column, sa.String),
            sa.column(column.pointer_column, sa.String),
        )
        _table_cache[key] = table
    return table

