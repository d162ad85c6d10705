"""Async SQLite database manager for price history persistence.

Uses aiosqlite for non-blocking database operations with WAL mode
for concurrent read/write performance.
"""

import os
from typing import Self

import aiosqlite

from pricekeeper.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS price_points (
    timestamp_ms INTEGER PRIMARY KEY,
    price TEXT NOT NULL,
    volume TEXT NOT NULL DEFAULT '0'
);

CREATE TABLE IF NOT EXISTS daily_candles (
    date TEXT PRIMARY KEY,
    open TEXT NOT NULL,
    high TEXT NOT NULL,
    low TEXT NOT NULL,
    close TEXT NOT NULL,
    volume TEXT NOT NULL DEFAULT '0',
    updated_at_ms INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS current_price (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    price TEXT NOT NULL,
    change_24h TEXT NOT NULL DEFAULT '0',
    change_percent_24h TEXT NOT NULL DEFAULT '0',
    timestamp_ms INTEGER NOT NULL,
    source TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS portfolio_summary (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    holdings TEXT NOT NULL,
    price_usd TEXT NOT NULL,
    main_currency TEXT NOT NULL,
    secondary_currency TEXT NOT NULL,
    value_main TEXT NOT NULL,
    value_secondary TEXT NOT NULL,
    total_invested_main TEXT NOT NULL,
    unrealized_pnl_main TEXT NOT NULL,
    unrealized_pnl_percent TEXT NOT NULL,
    change_24h_main TEXT NOT NULL,
    change_24h_percent TEXT NOT NULL,
    updated_at_ms INTEGER NOT NULL
);
"""


class PriceDatabase:
    """Async SQLite connection manager for price data.

    Manages database lifecycle including schema creation, WAL mode
    configuration, and clean resource cleanup.

    Usage:
        async with PriceDatabase("/path/to/db") as db:
            await db.db.execute("SELECT ...")
    """

    def __init__(self, db_path: str = "data/prices.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open database connection, configure pragmas, and create schema.

        Creates the parent directory if it does not exist. Safe to call
        again on an open database.
        """
        if self._connection is not None:
            return

        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("price_db_connected", db_path=self._db_path)

    async def ping(self) -> None:
        """Connectivity check: connect if needed and run a trivial query."""
        await self.connect()
        cursor = await self.db.execute("SELECT 1")
        await cursor.fetchone()

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("price_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        """Insert schema version if not already set."""
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
