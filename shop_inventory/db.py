import sqlite3
from typing import Iterable

from flask import current_app, g

from shop_inventory.contexts.transfers.domain.queue_entry import TRANSFER_QUEUE_STATUSES


TRANSFER_QUEUE_TABLE = "inventory_transfer_queue"
TRANSFER_QUEUE_INDEXES = {
    "idx_transfer_queue_claim": ("status", "priority", "created_at"),
    "idx_transfer_queue_retry": ("status", "next_retry_at"),
    "idx_transfer_queue_source": ("source_system", "status"),
}


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor()
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def commit(self):
        self._conn.commit()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        import psycopg2
        import psycopg2.extras

        conn = psycopg2.connect(db_path, cursor_factory=psycopg2.extras.RealDictCursor)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = _connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
        return

    _init_db_sqlite(db)


def _status_check() -> str:
    return ", ".join(f"'{status}'" for status in TRANSFER_QUEUE_STATUSES)


def _init_db_sqlite(db: Database):
    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS inventory_transfer_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            external_reference TEXT NOT NULL UNIQUE,
            transfer_payload TEXT NOT NULL,
            is_transfer_request INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ({_status_check()})),
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            next_retry_at TEXT,
            result_doc_entry INTEGER,
            result_doc_num TEXT,
            last_error TEXT,
            from_warehouse TEXT NOT NULL,
            to_warehouse TEXT NOT NULL,
            source_system TEXT NOT NULL DEFAULT 'Desktop',
            priority INTEGER NOT NULL DEFAULT 0,
            total_quantity REAL NOT NULL DEFAULT 0,
            line_count INTEGER NOT NULL DEFAULT 0,
            created_by TEXT,
            comments TEXT,
            journal_memo TEXT,
            due_date TEXT,
            reservation_id TEXT,
            created_at TEXT NOT NULL,
            processing_started_at TEXT,
            processed_at TEXT
        )
        """
    )
    _create_queue_indexes(db)
    db.commit()


def _init_db_postgres(db: Database) -> None:
    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS inventory_transfer_queue (
            id BIGSERIAL PRIMARY KEY,
            external_reference TEXT NOT NULL UNIQUE,
            transfer_payload TEXT NOT NULL,
            is_transfer_request INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ({_status_check()})),
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            next_retry_at TEXT,
            result_doc_entry BIGINT,
            result_doc_num TEXT,
            last_error TEXT,
            from_warehouse TEXT NOT NULL,
            to_warehouse TEXT NOT NULL,
            source_system TEXT NOT NULL DEFAULT 'Desktop',
            priority INTEGER NOT NULL DEFAULT 0,
            total_quantity DOUBLE PRECISION NOT NULL DEFAULT 0,
            line_count INTEGER NOT NULL DEFAULT 0,
            created_by TEXT,
            comments TEXT,
            journal_memo TEXT,
            due_date TEXT,
            reservation_id TEXT,
            created_at TEXT NOT NULL,
            processing_started_at TEXT,
            processed_at TEXT
        )
        """
    )
    _create_queue_indexes(db)


def _create_queue_indexes(db) -> None:
    # Timestamps are ISO text; the batch query sorts on these columns directly.
    for index_name, columns in TRANSFER_QUEUE_INDEXES.items():
        db.execute(
            f"CREATE INDEX IF NOT EXISTS {index_name} ON {TRANSFER_QUEUE_TABLE} ({', '.join(columns)})"
        )
