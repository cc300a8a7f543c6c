"""
PostgreSQL storage for LTP ticks.

Two tables: `topics` maps a series name to a durable topic_id (with optional
index/option classification), and `ltp_data` is an append-only log of price
observations referencing a topic_id with a server-assigned timestamp.
"""

import os
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, Optional, Set, Tuple

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS topics (
        topic_id SERIAL PRIMARY KEY,
        topic_name VARCHAR(255) NOT NULL UNIQUE,
        index_name VARCHAR(50),
        type VARCHAR(10),
        strike DOUBLE PRECISION,
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ltp_data (
        id BIGSERIAL PRIMARY KEY,
        topic_id INTEGER NOT NULL REFERENCES topics(topic_id),
        ltp DOUBLE PRECISION NOT NULL,
        received_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_ltp_data_topic_time
        ON ltp_data(topic_id, received_at DESC)
    """,
)


class Database:
    """PostgreSQL database manager for series and LTP storage."""

    def __init__(self, database_url: str = None, pool_size: int = 10, command_timeout: float = 20):
        """Initialize database with connection pool settings."""
        self.database_url = database_url or os.getenv("DATABASE_URL")
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self._pool = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self):
        """Initialize database connection pool and schema."""
        async with self._init_lock:
            if self._initialized:
                return

            if not self.database_url:
                raise ValueError("DATABASE_URL environment variable is required")

            try:
                self._pool = await asyncpg.create_pool(
                    self.database_url,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                    statement_cache_size=0,  # Required for pgbouncer compatibility
                    server_settings={
                        'application_name': 'ltpflow',
                        'timezone': 'UTC'
                    }
                )

                async with self._pool.acquire() as conn:
                    await conn.fetchval('SELECT 1')
                    await self._create_schema(conn)

                logger.info(f"PostgreSQL database initialized with pool size {self.pool_size}")
                self._initialized = True

            except Exception as e:
                logger.error(f"Failed to initialize PostgreSQL database: {e}")
                raise

    async def _create_schema(self, conn: asyncpg.Connection):
        """Create tables and indexes if they do not exist."""
        async with conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)

    async def close(self):
        """Close database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            self._initialized = False
            logger.info("PostgreSQL database pool closed")

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self._initialized:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        """Pooled connection inside a transaction; commits on exit, rolls back on error."""
        async with self.get_connection() as conn:
            async with conn.transaction():
                yield conn

    async def fetch_series(self) -> Dict[str, int]:
        """Load every known series as {topic_name: topic_id}."""
        async with self.get_connection() as conn:
            rows = await conn.fetch('SELECT topic_id, topic_name FROM topics')
            return {row['topic_name']: row['topic_id'] for row in rows}

    async def fetch_unclassified_series(self) -> Set[str]:
        """Names of series stored without an index_name."""
        async with self.get_connection() as conn:
            rows = await conn.fetch('SELECT topic_name FROM topics WHERE index_name IS NULL')
            return {row['topic_name'] for row in rows}

    async def upsert_series(
        self,
        conn,
        topic_name: str,
        index_name: Optional[str] = None,
        instrument_type: Optional[str] = None,
        strike: Optional[float] = None,
    ) -> int:
        """
        Return the topic_id for a series, inserting the row if absent.

        Relies on the unique topic_name constraint so concurrent callers for
        the same name always end up with the same single row. A row stored
        without classification (index_name NULL) is filled in by the first
        call that carries it; existing values are never overwritten.
        """
        row = await conn.fetchrow(
            'SELECT topic_id, index_name FROM topics WHERE topic_name = $1',
            topic_name
        )
        if row is not None and (row['index_name'] is not None or index_name is None):
            return row['topic_id']

        # DO UPDATE so RETURNING yields the existing id on conflict
        return await conn.fetchval('''
            INSERT INTO topics (topic_name, index_name, type, strike)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (topic_name) DO UPDATE SET
                index_name = COALESCE(topics.index_name, EXCLUDED.index_name),
                type = COALESCE(topics.type, EXCLUDED.type),
                strike = COALESCE(topics.strike, EXCLUDED.strike)
            RETURNING topic_id
        ''', topic_name, index_name, instrument_type, strike)

    async def insert_ltp_rows(self, conn, rows: Iterable[Tuple[int, float]]) -> int:
        """Append (topic_id, ltp) rows; received_at is assigned by the server."""
        rows = list(rows)
        if not rows:
            return 0
        await conn.executemany(
            'INSERT INTO ltp_data (topic_id, ltp, received_at) VALUES ($1, $2, NOW())',
            rows
        )
        return len(rows)

    async def get_db_stats(self) -> Dict[str, Any]:
        """Get database statistics for debugging."""
        async with self.get_connection() as conn:
            stats = await conn.fetchrow('''
                SELECT
                    (SELECT COUNT(*) FROM topics) as total_topics,
                    (SELECT COUNT(*) FROM ltp_data) as total_ticks,
                    (SELECT MAX(received_at) FROM ltp_data) as newest_tick
            ''')

            return {
                "total_topics": stats["total_topics"] if stats else 0,
                "total_ticks": stats["total_ticks"] if stats else 0,
                "newest_tick": stats["newest_tick"].isoformat() if stats and stats["newest_tick"] else None,
                "database_type": "PostgreSQL",
                "pool_size": self.pool_size
            }
