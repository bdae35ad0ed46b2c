import logging
from contextlib import contextmanager
from urllib.parse import urlparse

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

from .config import mask_database_url

logger = logging.getLogger(__name__)


# ============================================================
# SCHEMA
# ============================================================

TABLE_SQL = """
CREATE TABLE IF NOT EXISTS qa_cache (
  id BIGSERIAL PRIMARY KEY,
  qnorm TEXT NOT NULL,
  question TEXT NOT NULL,
  answer TEXT NOT NULL,
  expires_at TIMESTAMPTZ NOT NULL,
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_qa_cache_qnorm ON qa_cache(qnorm);
CREATE INDEX IF NOT EXISTS idx_qa_cache_qnorm_trgm ON qa_cache USING gin (qnorm gin_trgm_ops);
"""

EMBEDDING_COLUMN_SQL = "ALTER TABLE qa_cache ADD COLUMN IF NOT EXISTS embedding vector({dim});"


class Database:
    """
    Connection pool around the Postgres database holding qa_cache.

    Connections are borrowed per call with connection() and handed back
    afterwards, so request handlers never hold one across awaits.
    """

    def __init__(self, url: str, minconn: int = 1, maxconn: int = 10):
        self.url = url
        self.pool = ThreadedConnectionPool(minconn=minconn, maxconn=maxconn, dsn=url)
        self.vector_enabled = False

    @classmethod
    def connect(cls, url: str, minconn: int = 1, maxconn: int = 10) -> "Database":
        """
        Tests a direct connection first (gives a clearer startup error),
        then creates the pool.
        """
        parsed = urlparse(url)
        if not parsed.hostname:
            raise ValueError("DATABASE_URL missing hostname")
        if not parsed.username:
            raise ValueError("DATABASE_URL missing username")

        logger.info(f"Connecting to database: {mask_database_url(url)}")

        test_conn = psycopg2.connect(url)
        try:
            with test_conn.cursor() as cur:
                cur.execute("SELECT 1")
        finally:
            test_conn.close()

        db = cls(url, minconn=minconn, maxconn=maxconn)
        logger.info("Database connection pool created successfully")
        return db

    @contextmanager
    def connection(self):
        """
        Borrow a connection from the pool and always return it.
        """
        conn = None
        try:
            conn = self.pool.getconn()
            yield conn
        finally:
            if conn is not None:
                self.pool.putconn(conn)

    def ensure_schema(self, vector_dim: int) -> None:
        """
        Creates extensions, the qa_cache table and its indexes.

        pg_trgm is required for fuzzy matching. The vector extension is
        optional: without it the embedding column is not created and
        vector_enabled stays False.
        """
        with self.connection() as conn:
            with conn:
                with conn.cursor() as cur:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm;")
                    cur.execute(TABLE_SQL)

            try:
                with conn:
                    with conn.cursor() as cur:
                        cur.execute("CREATE EXTENSION IF NOT EXISTS vector;")
                        cur.execute(EMBEDDING_COLUMN_SQL.format(dim=int(vector_dim)))
                self.vector_enabled = True
            except psycopg2.Error as e:
                self.vector_enabled = False
                logger.warning(f"pgvector unavailable, semantic matching disabled: {e}")

        logger.info(f"Schema ready (vector_enabled={self.vector_enabled})")

    def ping(self) -> None:
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")

    def close(self) -> None:
        self.pool.closeall()
