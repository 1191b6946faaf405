import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiosqlite
import structlog

from storefront_jobs.errors import ExternalServiceError

logger = structlog.get_logger()


@dataclass
class Order:
    """An order row as seen by background jobs."""
    id: str
    status: str
    order_number: Optional[str] = None
    email: Optional[str] = None
    total_cents: int = 0
    created_at: Optional[str] = None


class OrderStorage:
    """Read access to orders in the primary SQLite database.

    Holds a single long-lived connection, opened on first use and released
    by ``close()``.
    """

    def __init__(self, db_path: str, create: bool = False) -> None:
        """Initialize order storage.

        Args:
            db_path: Path to SQLite database file
            create: Create the database file if it does not exist. The worker
                leaves this off so that a missing database fails its startup check.
        """
        self.db_path = db_path
        self.create = create
        self._db: Optional[aiosqlite.Connection] = None

    async def connect(self) -> aiosqlite.Connection:
        if self._db is not None:
            return self._db

        if self.create:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(self.db_path)
        else:
            uri = f"{Path(self.db_path).resolve().as_uri()}?mode=rw"
            db = await aiosqlite.connect(uri, uri=True)

        db.row_factory = aiosqlite.Row
        self._db = db
        logger.info("order_storage_connected", db_path=self.db_path, source="storage")
        return db

    async def ping(self) -> bool:
        """Check that the database can be opened and queried."""
        try:
            db = await self.connect()
            async with db.execute("SELECT 1") as cursor:
                await cursor.fetchone()
        except (sqlite3.Error, OSError) as e:
            logger.error(
                "order_storage_unreachable",
                db_path=self.db_path,
                error=str(e),
                source="storage",
            )
            return False
        return True

    async def initialize(self) -> None:
        """Initialize database schema."""
        db = await self.connect()
        await db.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                order_number TEXT UNIQUE,
                status TEXT NOT NULL,
                email TEXT,
                total_cents INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await db.commit()

        logger.info("database_initialized", source="storage")

    async def save_order(
        self,
        order_id: str,
        status: str = "pending",
        order_number: Optional[str] = None,
        email: Optional[str] = None,
        total_cents: int = 0,
    ) -> None:
        db = await self.connect()
        await db.execute(
            """
            INSERT INTO orders (id, order_number, status, email, total_cents)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                order_number = excluded.order_number,
                status = excluded.status,
                email = excluded.email,
                total_cents = excluded.total_cents
            """,
            (order_id, order_number, status, email, total_cents),
        )
        await db.commit()

    async def get_order(self, order_id: str) -> Optional[Order]:
        """Load an order by id.

        Raises:
            ExternalServiceError: If the database query fails
        """
        try:
            db = await self.connect()
            async with db.execute(
                """
                SELECT id, order_number, status, email, total_cents, created_at
                FROM orders WHERE id = ?
                """,
                (order_id,),
            ) as cursor:
                row = await cursor.fetchone()
        except (sqlite3.Error, OSError) as e:
            raise ExternalServiceError("database", f"order lookup failed: {e}") from e

        if row is None:
            return None

        return Order(
            id=row["id"],
            status=row["status"],
            order_number=row["order_number"],
            email=row["email"],
            total_cents=row["total_cents"],
            created_at=row["created_at"],
        )

    async def count_orders(self) -> int:
        db = await self.connect()
        async with db.execute("SELECT COUNT(*) FROM orders") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def close(self) -> None:
        db, self._db = self._db, None
        if db is not None:
            await db.close()
            logger.info("order_storage_closed", source="storage")
