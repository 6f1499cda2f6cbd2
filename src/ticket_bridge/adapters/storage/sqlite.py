"""SQLite ticket repository using aiosqlite.

This module implements the TicketRepository protocol on a local SQLite
file. Every operation opens its own short-lived connection, so no
transaction is ever held while the bridge waits on a chat platform.

The "one non-terminal ticket per user" rule is enforced here as well as in
the state machine: a partial unique index on ``tickets(user_id)`` covers the
non-terminal statuses.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import structlog

from ...models.message import DeliveryStatus, Direction, Message
from ...models.ticket import NON_TERMINAL_STATUSES, Category, Ticket, TicketStatus, User
from ...utils.async_helpers import PersistenceError, TicketNotFound

log = structlog.get_logger()

_NON_TERMINAL_SQL = ", ".join(sorted(f"'{status.value}'" for status in NON_TERMINAL_STATUSES))

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    origin_platform_id TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
    destination_category_ref TEXT NOT NULL,
    transcript_category_ref TEXT
);

CREATE TABLE IF NOT EXISTS tickets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    category_id INTEGER NOT NULL REFERENCES categories(id),
    status TEXT NOT NULL,
    destination_channel_ref TEXT,
    claimed_by TEXT,
    created_at TEXT NOT NULL,
    closed_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_tickets_one_open_per_user
    ON tickets(user_id) WHERE status IN ({_NON_TERMINAL_SQL});

CREATE UNIQUE INDEX IF NOT EXISTS ux_tickets_channel
    ON tickets(destination_channel_ref) WHERE destination_channel_ref IS NOT NULL;

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ticket_id INTEGER NOT NULL REFERENCES tickets(id),
    direction TEXT NOT NULL,
    origin_id TEXT NOT NULL,
    author_name TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL,
    delivery_status TEXT NOT NULL,
    enqueued_at TEXT NOT NULL,
    delivered_at TEXT,
    source_ref TEXT UNIQUE
);

CREATE INDEX IF NOT EXISTS ix_messages_delivery ON messages(delivery_status);
"""


def _now() -> datetime:
    return datetime.now(UTC)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_user(row: aiosqlite.Row) -> User:
    return User(
        id=row["id"],
        origin_platform_id=row["origin_platform_id"],
        display_name=row["display_name"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_category(row: aiosqlite.Row) -> Category:
    return Category(
        id=row["id"],
        name=row["name"],
        destination_category_ref=row["destination_category_ref"],
        transcript_category_ref=row["transcript_category_ref"],
    )


def _row_to_ticket(row: aiosqlite.Row) -> Ticket:
    return Ticket(
        id=row["id"],
        user_id=row["user_id"],
        category_id=row["category_id"],
        status=TicketStatus(row["status"]),
        destination_channel_ref=row["destination_channel_ref"],
        claimed_by=row["claimed_by"],
        created_at=datetime.fromisoformat(row["created_at"]),
        closed_at=_parse_ts(row["closed_at"]),
    )


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        ticket_id=row["ticket_id"],
        direction=Direction(row["direction"]),
        origin_id=row["origin_id"],
        author_name=row["author_name"],
        content=row["content"],
        delivery_status=DeliveryStatus(row["delivery_status"]),
        enqueued_at=datetime.fromisoformat(row["enqueued_at"]),
        delivered_at=_parse_ts(row["delivered_at"]),
        source_ref=row["source_ref"],
    )


class SQLiteTicketRepository:
    """TicketRepository backed by a SQLite file.

    Example:
        repo = SQLiteTicketRepository(Path("data/tickets.db"))
        await repo.initialize()
        user = await repo.get_or_create_user("12345", "Alice")
    """

    def __init__(self, path: Path, timeout: float = 5.0) -> None:
        """Initialize the repository.

        Args:
            path: Database file location (created on initialize).
            timeout: Seconds to wait when the database is locked.
        """
        self._path = Path(path)
        self._timeout = timeout

    @property
    def path(self) -> Path:
        return self._path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Borrow a connection for one operation, translating driver errors."""
        try:
            async with aiosqlite.connect(self._path, timeout=self._timeout) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys = ON")
                yield db
        except aiosqlite.Error as e:
            log.error("datastore_error", path=str(self._path), error=str(e))
            raise PersistenceError(f"Datastore operation failed: {e}") from e

    async def _fetch_one(self, query: str, params: tuple[object, ...]) -> aiosqlite.Row | None:
        async with self._connect() as db:
            async with db.execute(query, params) as cursor:
                return await cursor.fetchone()

    async def initialize(self) -> None:
        """Create the database file and schema if needed."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create datastore directory: {e}") from e

        async with self._connect() as db:
            await db.executescript(SCHEMA)
            await db.commit()

        log.info("datastore_initialized", path=str(self._path))

    async def ping(self) -> bool:
        try:
            row = await self._fetch_one("SELECT 1", ())
        except PersistenceError:
            return False
        return row is not None

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    async def upsert_category(self, category: Category) -> Category:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO categories
                    (id, name, destination_category_ref, transcript_category_ref)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    destination_category_ref = excluded.destination_category_ref,
                    transcript_category_ref = excluded.transcript_category_ref
                """,
                (
                    category.id,
                    category.name,
                    category.destination_category_ref,
                    category.transcript_category_ref,
                ),
            )
            await db.commit()
        return category

    async def get_category(self, category_id: int) -> Category | None:
        row = await self._fetch_one("SELECT * FROM categories WHERE id = ?", (category_id,))
        return _row_to_category(row) if row else None

    async def find_category(self, key: str) -> Category | None:
        key = key.strip()
        if key.isdigit():
            return await self.get_category(int(key))
        row = await self._fetch_one("SELECT * FROM categories WHERE name = ?", (key,))
        return _row_to_category(row) if row else None

    async def list_categories(self) -> list[Category]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM categories ORDER BY id") as cursor:
                return [_row_to_category(row) async for row in cursor]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_or_create_user(self, origin_platform_id: str, display_name: str) -> User:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO users (origin_platform_id, display_name, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(origin_platform_id) DO UPDATE SET
                    display_name = excluded.display_name
                WHERE excluded.display_name != '' AND excluded.display_name != display_name
                """,
                (origin_platform_id, display_name, _ts(_now())),
            )
            await db.commit()
            async with db.execute(
                "SELECT * FROM users WHERE origin_platform_id = ?", (origin_platform_id,)
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            raise PersistenceError(f"User {origin_platform_id} vanished after insert")
        return _row_to_user(row)

    async def get_user(self, user_id: int) -> User | None:
        row = await self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return _row_to_user(row) if row else None

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------

    async def find_open_ticket_for_user(self, user_id: int) -> Ticket | None:
        row = await self._fetch_one(
            f"SELECT * FROM tickets WHERE user_id = ? AND status IN ({_NON_TERMINAL_SQL})",
            (user_id,),
        )
        return _row_to_ticket(row) if row else None

    async def create_ticket(self, user_id: int, category_id: int) -> Ticket:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO tickets (user_id, category_id, status, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, category_id, TicketStatus.OPEN.value, _ts(_now())),
            )
            ticket_id = cursor.lastrowid
            await db.commit()
            async with db.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)) as cur:
                row = await cur.fetchone()

        if row is None:
            raise PersistenceError(f"Ticket {ticket_id} vanished after insert")
        return _row_to_ticket(row)

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        row = await self._fetch_one("SELECT * FROM tickets WHERE id = ?", (ticket_id,))
        return _row_to_ticket(row) if row else None

    async def find_ticket_by_channel(self, channel_ref: str) -> Ticket | None:
        row = await self._fetch_one(
            "SELECT * FROM tickets WHERE destination_channel_ref = ?", (channel_ref,)
        )
        return _row_to_ticket(row) if row else None

    async def list_tickets(self, statuses: Iterable[TicketStatus] | None = None) -> list[Ticket]:
        query = "SELECT * FROM tickets"
        params: tuple[object, ...] = ()
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            query += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params = tuple(values)
        query += " ORDER BY id"

        async with self._connect() as db:
            async with db.execute(query, params) as cursor:
                return [_row_to_ticket(row) async for row in cursor]

    async def update_ticket_status(
        self,
        ticket_id: int,
        status: TicketStatus,
        *,
        claimed_by: str | None = None,
        closed_at: datetime | None = None,
    ) -> Ticket:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE tickets SET
                    status = ?,
                    claimed_by = COALESCE(?, claimed_by),
                    closed_at = COALESCE(?, closed_at)
                WHERE id = ?
                """,
                (status.value, claimed_by, _ts(closed_at), ticket_id),
            )
            if cursor.rowcount == 0:
                raise TicketNotFound(f"Ticket {ticket_id} not found")
            await db.commit()
            async with db.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)) as cur:
                row = await cur.fetchone()

        return _row_to_ticket(row)

    async def set_destination_channel(self, ticket_id: int, channel_ref: str) -> Ticket:
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE tickets SET destination_channel_ref = ?
                WHERE id = ? AND destination_channel_ref IS NULL
                """,
                (channel_ref, ticket_id),
            )
            await db.commit()
            async with db.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)) as cur:
                row = await cur.fetchone()

        if row is None:
            raise TicketNotFound(f"Ticket {ticket_id} not found")
        return _row_to_ticket(row)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def insert_message(
        self,
        ticket_id: int,
        direction: Direction,
        origin_id: str,
        content: str,
        *,
        author_name: str = "",
        source_ref: str | None = None,
        delivery_status: DeliveryStatus = DeliveryStatus.PENDING,
    ) -> Message:
        enqueued_at = _now()
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO messages
                    (ticket_id, direction, origin_id, author_name, content,
                     delivery_status, enqueued_at, source_ref)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket_id,
                    direction.value,
                    origin_id,
                    author_name,
                    content,
                    delivery_status.value,
                    _ts(enqueued_at),
                    source_ref,
                ),
            )
            message_id = cursor.lastrowid
            await db.commit()

        if message_id is None:
            raise PersistenceError("Message insert returned no row id")

        return Message(
            id=message_id,
            ticket_id=ticket_id,
            direction=direction,
            origin_id=origin_id,
            author_name=author_name,
            content=content,
            delivery_status=delivery_status,
            enqueued_at=enqueued_at,
            source_ref=source_ref,
        )

    async def find_message_by_source(self, source_ref: str) -> Message | None:
        row = await self._fetch_one("SELECT * FROM messages WHERE source_ref = ?", (source_ref,))
        return _row_to_message(row) if row else None

    async def get_message(self, message_id: int) -> Message | None:
        row = await self._fetch_one("SELECT * FROM messages WHERE id = ?", (message_id,))
        return _row_to_message(row) if row else None

    async def update_message_delivery_status(
        self,
        message_id: int,
        status: DeliveryStatus,
        delivered_at: datetime | None = None,
    ) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE messages SET delivery_status = ?, delivered_at = ? WHERE id = ?",
                (status.value, _ts(delivered_at), message_id),
            )
            await db.commit()

    async def list_queued_messages(self) -> list[Message]:
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT * FROM messages
                WHERE delivery_status IN (?, ?)
                ORDER BY enqueued_at, id
                """,
                (DeliveryStatus.QUEUED.value, DeliveryStatus.PENDING.value),
            ) as cursor:
                return [_row_to_message(row) async for row in cursor]
