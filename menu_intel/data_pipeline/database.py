"""
PostgreSQL backend for the menu intelligence pipeline

DatabaseManager owns a thread-safe connection pool. PostgresStorage keeps
every record kind in one JSONB table keyed by (kind, record_key).
"""

import os
import logging
from typing import Dict, List, Optional, Any
from contextlib import contextmanager
import psycopg2
from psycopg2 import sql
from psycopg2.extras import RealDictCursor, Json
from psycopg2.pool import ThreadedConnectionPool

from menu_intel.errors import ConfigurationError, NotFound
from menu_intel.data_pipeline.storage import Storage, Kind, kind_name

logger = logging.getLogger(__name__)


def postgres_params_from_env() -> Dict[str, Any]:
    """Connection parameters from the POSTGRES_* environment variables"""
    return {
        'host': os.getenv('POSTGRES_HOST', 'localhost'),
        'port': os.getenv('POSTGRES_PORT', '5432'),
        'database': os.getenv('POSTGRES_DB', 'menu_intel'),
        'user': os.getenv('POSTGRES_USER', 'postgres'),
        'password': os.getenv('POSTGRES_PASSWORD', ''),
    }


class DatabaseManager:
    """Pooled PostgreSQL connections; one transaction per cursor block."""

    def __init__(self, connection_params: Optional[Dict[str, Any]] = None,
                 min_connections: int = 1, max_connections: int = 10):
        """
        Open the connection pool.

        Args:
            connection_params: psycopg2 connect kwargs; POSTGRES_* env vars when omitted
            min_connections: Connections opened up front
            max_connections: Upper bound, sized to the pipeline's concurrency
        """
        if min_connections < 1 or max_connections < min_connections:
            raise ConfigurationError("Invalid connection pool bounds")

        self.connection_params = connection_params or postgres_params_from_env()
        try:
            self.pool = ThreadedConnectionPool(min_connections, max_connections, **self.connection_params)
        except psycopg2.Error as e:
            logger.error(f"Could not reach PostgreSQL at {self.connection_params.get('host')}: {e}")
            raise
        logger.info(f"PostgreSQL pool ready ({min_connections}-{max_connections} connections)")

    @contextmanager
    def cursor(self):
        """Cursor returning dict rows; commits on success, rolls back on any error."""
        connection = self.pool.getconn()
        try:
            with connection.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            self.pool.putconn(connection)

    def execute_query(self, query, params: Optional[tuple] = None) -> List[Dict]:
        """Run a SELECT or ... RETURNING statement and fetch every row"""
        with self.cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def execute_update(self, query, params: Optional[tuple] = None) -> int:
        """Run a statement without a result set; returns the affected row count"""
        with self.cursor() as cur:
            cur.execute(query, params)
            return cur.rowcount

    def close(self):
        self.pool.closeall()
        logger.info("PostgreSQL pool closed")


class PostgresStorage(Storage):
    """Storage backed by one JSONB table keyed by (kind, record_key)"""

    def __init__(self, db: DatabaseManager, table: str = 'menu_intel_records'):
        self.db = db
        self.table_name = table
        self.table = sql.Identifier(table)

    def create_schema(self):
        """Create the record table if it does not exist."""
        query = sql.SQL("""
        CREATE TABLE IF NOT EXISTS {table} (
            kind TEXT NOT NULL,
            record_key TEXT NOT NULL,
            restaurant_id TEXT,
            body JSONB NOT NULL,
            seq BIGSERIAL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (kind, record_key)
        );
        CREATE INDEX IF NOT EXISTS {index} ON {table} (kind, restaurant_id, seq);
        """).format(table=self.table, index=sql.Identifier(f"{self.table_name}_restaurant_idx"))
        self.db.execute_update(query)
        logger.info(f"Ensured table {self.table_name}")

    def get(self, kind: Kind, key: str) -> Optional[Dict]:
        query = sql.SQL("SELECT body FROM {table} WHERE kind = %s AND record_key = %s").format(table=self.table)
        rows = self.db.execute_query(query, (kind_name(kind), key))
        return rows[0]['body'] if rows else None

    def put(self, kind: Kind, key: str, record: Dict):
        query = sql.SQL("""
        INSERT INTO {table} (kind, record_key, restaurant_id, body)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (kind, record_key) DO UPDATE SET
            restaurant_id = EXCLUDED.restaurant_id,
            body = EXCLUDED.body,
            updated_at = NOW()
        """).format(table=self.table)
        self.db.execute_update(query, (kind_name(kind), key, record.get('restaurant_id'), Json(record)))

    def update(self, kind: Kind, key: str, changes: Dict) -> Dict:
        query = sql.SQL("""
        UPDATE {table} SET body = body || %s, updated_at = NOW()
        WHERE kind = %s AND record_key = %s
        RETURNING body
        """).format(table=self.table)
        rows = self.db.execute_query(query, (Json(changes), kind_name(kind), key))
        if not rows:
            raise NotFound(f"{kind_name(kind)} {key} not found")
        return rows[0]['body']

    def query(self, kind: Kind, restaurant_id: Optional[str] = None, **filters) -> List[Dict]:
        clauses = [sql.SQL("kind = %s")]
        params: List[Any] = [kind_name(kind)]
        if restaurant_id is not None:
            clauses.append(sql.SQL("restaurant_id = %s"))
            params.append(restaurant_id)
        if filters:
            # JSONB containment matches top-level equality
            clauses.append(sql.SQL("body @> %s"))
            params.append(Json(filters))

        query = sql.SQL("SELECT body FROM {table} WHERE {where} ORDER BY seq").format(
            table=self.table,
            where=sql.SQL(' AND ').join(clauses),
        )
        return [row['body'] for row in self.db.execute_query(query, tuple(params))]

    def compare_and_set(self, kind: Kind, key: str, field: str, expected: Any,
                        changes: Dict) -> Optional[Dict]:
        query = sql.SQL("""
        UPDATE {table} SET body = body || %s, updated_at = NOW()
        WHERE kind = %s AND record_key = %s AND body @> %s
        RETURNING body
        """).format(table=self.table)
        rows = self.db.execute_query(
            query, (Json(changes), kind_name(kind), key, Json({field: expected}))
        )
        return rows[0]['body'] if rows else None
