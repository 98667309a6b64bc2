"""
PostgreSQL mirror of the developer collection, for SQL analytics and CSV export.
"""

import logging
import os
from typing import Optional, List
from datetime import datetime, timezone
import psycopg2
from psycopg2.extras import execute_values
from psycopg2.extensions import connection

from core.entities import Developer

logger = logging.getLogger(__name__)


class DatabaseClient:
    """
    PostgreSQL database client with UPSERT support.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "github_data",
        user: str = "github",
        password: str = "github",
    ):
        """
        Initialize database client.

        Args:
            host: Database host
            port: Database port
            database: Database name
            user: Database user
            password: Database password
        """
        # Allow environment variable overrides
        self.host = os.environ.get("DB_HOST", host)
        self.port = int(os.environ.get("DB_PORT", port))
        self.database = os.environ.get("DB_NAME", database)
        self.user = os.environ.get("DB_USER", user)
        self.password = os.environ.get("DB_PASSWORD", password)

        self._conn: Optional[connection] = None

    def connect(self):
        """Establish database connection."""
        if self._conn is None or self._conn.closed:
            logger.info(
                f"Connecting to database {self.database} at {self.host}:{self.port}"
            )
            self._conn = psycopg2.connect(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
            )
            logger.info("Database connection established")

    def close(self):
        """Close database connection."""
        if self._conn and not self._conn.closed:
            self._conn.close()
            logger.info("Database connection closed")

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def create_schema(self):
        """
        Create database schema if it doesn't exist.
        """
        self.connect()

        with self._conn.cursor() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS developers (
                    id SERIAL PRIMARY KEY,
                    developer_id BIGINT UNIQUE NOT NULL,
                    login TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'User',
                    name TEXT,
                    location TEXT,
                    company TEXT,
                    followers INTEGER NOT NULL,
                    following INTEGER,
                    public_repos INTEGER,
                    total_stars INTEGER,
                    total_forks INTEGER,
                    score DOUBLE PRECISION,
                    last_fetched TIMESTAMPTZ,
                    synced_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_developers_login
                ON developers(login)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_developers_followers
                ON developers(followers DESC)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_developers_score
                ON developers(score DESC)
            """)

            self._conn.commit()
            logger.info("Database schema created successfully")

    def upsert_developers(self, developers: List[Developer]) -> int:
        """
        Insert or update developers using UPSERT (ON CONFLICT).

        Args:
            developers: List of Developer entities

        Returns:
            Number of developers inserted/updated
        """
        if not developers:
            return 0

        self.connect()

        synced_at = datetime.now(timezone.utc)
        values = [
            (
                d.developer_id,
                d.login,
                d.type,
                d.name,
                d.location,
                d.company,
                d.followers,
                d.following,
                d.public_repos,
                d.total_stars,
                d.total_forks,
                d.score,
                d.last_fetched,
                synced_at,
            )
            for d in developers
        ]

        with self._conn.cursor() as cursor:
            execute_values(
                cursor,
                """
                INSERT INTO developers
                    (developer_id, login, type, name, location, company,
                     followers, following, public_repos, total_stars,
                     total_forks, score, last_fetched, synced_at)
                VALUES %s
                ON CONFLICT (developer_id)
                DO UPDATE SET
                    login = EXCLUDED.login,
                    type = EXCLUDED.type,
                    name = EXCLUDED.name,
                    location = EXCLUDED.location,
                    company = EXCLUDED.company,
                    followers = EXCLUDED.followers,
                    following = EXCLUDED.following,
                    public_repos = EXCLUDED.public_repos,
                    total_stars = EXCLUDED.total_stars,
                    total_forks = EXCLUDED.total_forks,
                    score = EXCLUDED.score,
                    last_fetched = EXCLUDED.last_fetched,
                    synced_at = EXCLUDED.synced_at
                """,
                values,
            )

            self._conn.commit()

        logger.info(f"Upserted {len(developers)} developers")
        return len(developers)

    def get_developer_count(self) -> int:
        """
        Get total number of developers in database.

        Returns:
            Developer count
        """
        self.connect()

        with self._conn.cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM developers")
            return cursor.fetchone()[0]

    def get_top_developers(self, limit: int = 100) -> List[Developer]:
        """
        Get top developers by influence score.

        Args:
            limit: Maximum number of developers to return

        Returns:
            List of Developer entities (without project details)
        """
        self.connect()

        with self._conn.cursor() as cursor:
            cursor.execute(
                """
                SELECT developer_id, login, type, name, location, company,
                       followers, following, public_repos, total_stars,
                       total_forks, score, last_fetched
                FROM developers
                ORDER BY score DESC, followers DESC
                LIMIT %s
                """,
                (limit,),
            )

            developers = []
            for row in cursor.fetchall():
                developer = Developer(
                    developer_id=row[0],
                    login=row[1],
                    type=row[2],
                    name=row[3],
                    location=row[4],
                    company=row[5],
                    followers=row[6],
                    following=row[7] or 0,
                    public_repos=row[8] or 0,
                    total_stars=row[9] or 0,
                    total_forks=row[10] or 0,
                    score=row[11] or 0.0,
                    last_fetched=row[12],
                )
                developers.append(developer)

            return developers

    def export_to_csv(self, output_path: str):
        """
        Export all developers to CSV file.

        Args:
            output_path: Path to output CSV file
        """
        self.connect()

        with self._conn.cursor() as cursor:
            with open(output_path, "w", encoding="utf-8") as f:
                # Write CSV header
                f.write(
                    "developer_id,login,type,name,location,followers,"
                    "public_repos,total_stars,total_forks,score,last_fetched\n"
                )

                # Use COPY for efficient export
                cursor.copy_expert(
                    """
                    COPY (
                        SELECT developer_id, login, type, name, location,
                               followers, public_repos, total_stars,
                               total_forks, score, last_fetched
                        FROM developers
                        ORDER BY score DESC, followers DESC
                    ) TO STDOUT WITH CSV
                    """,
                    f,
                )

        logger.info(f"Exported developers to {output_path}")
