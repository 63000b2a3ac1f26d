"""Create the inventory transfer queue from shop_inventory.db

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from shop_inventory.db import (
    TRANSFER_QUEUE_INDEXES,
    TRANSFER_QUEUE_TABLE,
    _convert_qmark_to_pg,
    _init_db_postgres,
    _init_db_sqlite,
)


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


class _AlembicDbAdapter:
    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params: Iterable | None = None):
        if params is None:
            return self._connection.exec_driver_sql(sql)

        statement = sql
        if self.backend == "postgres":
            statement = _convert_qmark_to_pg(statement)
        return self._connection.exec_driver_sql(statement, tuple(params))

    def commit(self):
        # Alembic owns the migration transaction.
        return None


def _resolve_backend(connection: Connection) -> str:
    dialect = (connection.dialect.name or "").lower()
    if dialect.startswith("postgres"):
        return "postgres"
    return "sqlite"


def upgrade() -> None:
    connection = op.get_bind()
    backend = _resolve_backend(connection)
    adapter = _AlembicDbAdapter(connection, backend)

    if backend == "postgres":
        _init_db_postgres(adapter)
        return

    _init_db_sqlite(adapter)


def downgrade() -> None:
    for index_name in reversed(list(TRANSFER_QUEUE_INDEXES)):
        op.execute(f"DROP INDEX IF EXISTS {index_name}")
    op.execute(f"DROP TABLE IF EXISTS {TRANSFER_QUEUE_TABLE}")
