from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
import psycopg2.extras

from portal.config import config
from portal.errors import RemoteStoreError
from portal.storage import SQLStore


def _plain(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class PostgresStore(SQLStore):
    placeholder = "%s"

    def __init__(self, conn_string: Optional[str] = None):
        super().__init__()
        conn_string = conn_string or config["database_url"]
        if not conn_string:
            raise RemoteStoreError("PORTAL_DATABASE_URL is not set")
        try:
            self.conn = psycopg2.connect(conn_string)
        except Exception as e:
            raise RemoteStoreError(f"Failed to connect to Postgres: {e}")

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        try:
            with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(self._sql(sql), tuple(params))
                rows = cur.fetchall()
            self.conn.commit()
        except psycopg2.Error as e:
            self.conn.rollback()
            raise RemoteStoreError(f"Query failed: {e}")
        return [{k: _plain(v) for k, v in row.items()} for row in rows]

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> None:
        try:
            with self.conn.cursor() as cur:
                cur.execute(self._sql(sql), tuple(params))
            self.conn.commit()
        except psycopg2.Error as e:
            self.conn.rollback()
            raise RemoteStoreError(f"Write failed: {e}")

    def apply_schema(self, schema_sql: str) -> None:
        try:
            with self.conn.cursor() as cur:
                cur.execute(schema_sql)
            self.conn.commit()
        except psycopg2.Error as e:
            self.conn.rollback()
            raise RemoteStoreError(f"Failed to apply schema: {e}")

    def close(self) -> None:
        self.conn.close()
