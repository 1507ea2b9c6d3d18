# db.py
# Postgres gateway (psycopg2). Every call borrows a pooled connection,
# runs one autocommit statement and hands the connection back; the bot
# awaits it through asyncio.to_thread so the event loop never blocks.

import asyncio
import logging
from typing import Any, Dict, List, Optional

import psycopg2
import psycopg2.extras
import psycopg2.pool
from psycopg2 import sql

import config
from errors import NotFoundError, TransientInfraError

logger = logging.getLogger(__name__)

RETRYABLE = (psycopg2.OperationalError, psycopg2.InterfaceError)

USER_COLUMNS = {"name", "phone", "user_type", "is_admin", "is_active"}
LISTING_COLUMNS = {
    "property_type", "listing_type", "title", "villa_type", "villa_type_other",
    "rooms_count", "floor", "bedrooms", "bathrooms", "bathroom_type",
    "property_size", "description", "location", "price", "contact_info",
    "display_name", "platform_link", "platform_name", "status", "admin_notes",
    "channel_message_id",
}
STATUSES = ("pending", "approved", "rejected", "published", "rented")
AUDIENCES = {"all": None, "brokers": "broker", "owners": "owner", "tenants": "tenant"}

# ────────────────────── schema ──────────────────────

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id           SERIAL PRIMARY KEY,
    telegram_id  BIGINT UNIQUE NOT NULL,
    name         TEXT,
    phone        TEXT,
    user_type    TEXT CHECK (user_type IN ('broker', 'owner', 'tenant')),
    is_admin     BOOLEAN NOT NULL DEFAULT FALSE,
    is_active    BOOLEAN NOT NULL DEFAULT TRUE,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS posts (
    id                  SERIAL PRIMARY KEY,
    user_id             INTEGER NOT NULL REFERENCES users(id),
    property_type       TEXT CHECK (property_type IN ('residential', 'commercial')),
    listing_type        TEXT NOT NULL DEFAULT 'rent',
    title               TEXT,
    villa_type          TEXT,
    villa_type_other    TEXT,
    rooms_count         INTEGER,
    floor               TEXT,
    bedrooms            INTEGER,
    bathrooms           INTEGER,
    bathroom_type       TEXT,
    property_size       TEXT,
    description         TEXT,
    location            TEXT,
    price               TEXT,
    contact_info        TEXT,
    display_name        TEXT,
    platform_link       TEXT,
    platform_name       TEXT,
    channel_message_id  BIGINT,
    status              TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'approved', 'rejected', 'published', 'rented')),
    admin_notes         TEXT,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    submitted_at        TIMESTAMPTZ,
    published_at        TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS post_images (
    id                SERIAL PRIMARY KEY,
    post_id           INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    telegram_file_id  TEXT NOT NULL,
    file_type         TEXT NOT NULL DEFAULT 'photo',
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS post_clicks (
    id                SERIAL PRIMARY KEY,
    post_id           INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    user_telegram_id  BIGINT NOT NULL,
    click_type        TEXT NOT NULL CHECK (click_type IN ('contact', 'view')),
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS posts_status_idx ON posts (status);
CREATE INDEX IF NOT EXISTS post_clicks_post_idx ON post_clicks (post_id);
"""

_LISTING_SELECT = """
    SELECT p.*,
           u.telegram_id AS owner_telegram_id,
           u.name        AS owner_name,
           u.phone       AS owner_phone,
           u.user_type   AS owner_type
      FROM posts p
      JOIN users u ON u.id = p.user_id
"""


def _assignments(fields: Dict[str, Any], allowed: set) -> sql.Composed:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"unknown columns: {sorted(unknown)}")
    return sql.SQL(", ").join(
        sql.SQL("{} = %s").format(sql.Identifier(k)) for k in fields
    )


class Database:
    def __init__(self, dsn: str, minconn: int = config.DB_POOL_MIN,
                 maxconn: int = config.DB_POOL_MAX):
        self.dsn = dsn
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None

    # ────────────────────── connection ──────────────────────

    def open(self) -> None:
        if self._pool is None:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                self.minconn, self.maxconn, self.dsn, connect_timeout=10
            )

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    def init_db(self) -> None:
        """Creates missing tables. Runs synchronously at startup."""
        self._execute(SCHEMA)
        logger.info("Database schema ready")

    def _execute(self, query, params=(), fetch: Optional[str] = None):
        if self._pool is None:
            raise RuntimeError("Database.open() was not called")
        conn = self._pool.getconn()
        broken = False
        try:
            conn.autocommit = True
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, params)
                if fetch == "one":
                    row = cur.fetchone()
                    return dict(row) if row is not None else None
                if fetch == "all":
                    return [dict(r) for r in cur.fetchall()]
                return cur.rowcount
        except RETRYABLE:
            broken = True
            raise
        finally:
            self._pool.putconn(conn, close=broken)

    async def _run(self, query, params=(), fetch: Optional[str] = None, *, retry: bool = True):
        """Runs one statement off the loop; retries idempotent ones."""
        attempts = config.RETRY_ATTEMPTS if retry else 1
        last: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.to_thread(self._execute, query, params, fetch)
            except RETRYABLE as e:
                last = e
                logger.warning("DB attempt %s/%s failed: %s", attempt, attempts, e)
                if attempt < attempts:
                    await asyncio.sleep(
                        min(config.RETRY_BACKOFF_STEP * attempt, config.RETRY_BACKOFF_MAX)
                    )
        raise TransientInfraError(f"database unavailable: {last}") from last

    # ────────────────────── users ──────────────────────

    async def get_user(self, telegram_id: int) -> Optional[dict]:
        return await self._run(
            "SELECT * FROM users WHERE telegram_id = %s", (telegram_id,), "one"
        )

    async def create_user(self, telegram_id: int, name: Optional[str] = None) -> dict:
        """Idempotent: returns the existing row on repeat calls."""
        await self._run(
            "INSERT INTO users (telegram_id, name) VALUES (%s, %s) "
            "ON CONFLICT (telegram_id) DO NOTHING",
            (telegram_id, name),
        )
        return await self.get_user(telegram_id)

    async def update_user(self, telegram_id: int, fields: Dict[str, Any]) -> None:
        if not fields:
            return
        query = sql.SQL("UPDATE users SET {}, updated_at = now() WHERE telegram_id = %s").format(
            _assignments(fields, USER_COLUMNS)
        )
        await self._run(query, (*fields.values(), telegram_id))

    async def is_admin(self, telegram_id: int) -> bool:
        row = await self._run(
            "SELECT is_admin FROM users WHERE telegram_id = %s AND is_active",
            (telegram_id,), "one",
        )
        return bool(row and row["is_admin"])

    async def list_admins(self) -> List[int]:
        rows = await self._run(
            "SELECT telegram_id FROM users WHERE is_admin AND is_active", (), "all"
        )
        return [r["telegram_id"] for r in rows]

    async def list_user_ids(self, audience: str = "all") -> List[int]:
        if audience not in AUDIENCES:
            raise ValueError(f"unknown audience {audience!r}")
        user_type = AUDIENCES[audience]
        if user_type is None:
            rows = await self._run("SELECT telegram_id FROM users WHERE is_active", (), "all")
        else:
            rows = await self._run(
                "SELECT telegram_id FROM users WHERE is_active AND user_type = %s",
                (user_type,), "all",
            )
        return [r["telegram_id"] for r in rows]

    # ────────────────────── listings ──────────────────────

    async def create_listing(self, owner_id: int, fields: Dict[str, Any]) -> int:
        unknown = set(fields) - LISTING_COLUMNS
        if unknown:
            raise ValueError(f"unknown columns: {sorted(unknown)}")
        columns = sql.SQL(", ").join(sql.Identifier(k) for k in ("user_id", *fields))
        values = sql.SQL(", ").join(sql.Placeholder() * len(fields))
        query = sql.SQL(
            "INSERT INTO posts ({}) SELECT u.id{} FROM users u WHERE u.telegram_id = %s RETURNING id"
        ).format(columns, sql.SQL(", ") + values if fields else sql.SQL(""))
        row = await self._run(query, (*fields.values(), owner_id), "one", retry=False)
        if row is None:
            raise NotFoundError("user", owner_id)
        return row["id"]

    async def discard_drafts(self, owner_id: int) -> int:
        """Deletes the owner's unsubmitted drafts (one draft per user)."""
        return await self._run(
            "DELETE FROM posts WHERE status = 'pending' AND submitted_at IS NULL "
            "AND user_id = (SELECT id FROM users WHERE telegram_id = %s)",
            (owner_id,),
        )

    async def update_draft_listing(self, owner_id: int, fields: Dict[str, Any]) -> Optional[int]:
        """Updates the owner's most recent draft; returns its id."""
        if not fields:
            return None
        query = sql.SQL(
            "UPDATE posts SET {}, updated_at = now() WHERE id = ("
            " SELECT p.id FROM posts p JOIN users u ON u.id = p.user_id"
            " WHERE u.telegram_id = %s AND p.status = 'pending' AND p.submitted_at IS NULL"
            " ORDER BY p.created_at DESC LIMIT 1) RETURNING id"
        ).format(_assignments(fields, LISTING_COLUMNS))
        row = await self._run(query, (*fields.values(), owner_id), "one")
        return row["id"] if row else None

    async def get_listing(self, listing_id: int) -> Optional[dict]:
        return await self._run(_LISTING_SELECT + " WHERE p.id = %s", (listing_id,), "one")

    async def get_pending_listings(self) -> List[dict]:
        return await self._run(
            _LISTING_SELECT + " WHERE p.status = 'pending' AND p.submitted_at IS NOT NULL"
            " ORDER BY p.submitted_at",
            (), "all",
        )

    async def get_user_listings(self, owner_id: int) -> List[dict]:
        return await self._run(
            """
            SELECT p.*,
                   (SELECT count(*) FROM post_clicks c
                     WHERE c.post_id = p.id AND c.click_type = 'contact') AS contact_clicks
              FROM posts p
              JOIN users u ON u.id = p.user_id
             WHERE u.telegram_id = %s AND p.submitted_at IS NOT NULL
             ORDER BY p.created_at DESC
            """,
            (owner_id,), "all",
        )

    async def update_listing_fields(self, listing_id: int, fields: Dict[str, Any]) -> None:
        """All columns in one UPDATE so readers never see half an edit."""
        if not fields:
            return
        query = sql.SQL("UPDATE posts SET {}, updated_at = now() WHERE id = %s").format(
            _assignments(fields, LISTING_COLUMNS)
        )
        await self._run(query, (*fields.values(), listing_id))

    async def submit_listing(self, listing_id: int) -> bool:
        """Marks a draft as submitted; False if it already was."""
        count = await self._run(
            "UPDATE posts SET submitted_at = now(), status = 'pending', updated_at = now() "
            "WHERE id = %s AND submitted_at IS NULL",
            (listing_id,),
        )
        return count == 1

    async def set_listing_status(self, listing_id: int, status: str,
                                 reason: Optional[str] = None,
                                 channel_message_id: Optional[int] = None) -> None:
        if status not in STATUSES:
            raise ValueError(f"unknown status {status!r}")
        await self._run(
            "UPDATE posts SET status = %s,"
            " admin_notes = COALESCE(%s, admin_notes),"
            " channel_message_id = COALESCE(%s, channel_message_id),"
            " published_at = CASE WHEN %s = 'published' THEN now() ELSE published_at END,"
            " updated_at = now() WHERE id = %s",
            (status, reason, channel_message_id, status, listing_id),
        )

    async def transition_status(self, listing_id: int, from_status: str, to_status: str,
                                reason: Optional[str] = None) -> bool:
        """Compare-and-set on status; False when someone got there first."""
        count = await self._run(
            "UPDATE posts SET status = %s, admin_notes = COALESCE(%s, admin_notes),"
            " updated_at = now() WHERE id = %s AND status = %s",
            (to_status, reason, listing_id, from_status),
        )
        return count == 1

    # ────────────────────── media ──────────────────────

    async def add_media(self, listing_id: int, item: Dict[str, str]) -> bool:
        """Appends one item unless the listing already holds MAX_MEDIA."""
        count = await self._run(
            "INSERT INTO post_images (post_id, telegram_file_id, file_type) "
            "SELECT %s, %s, %s "
            "WHERE (SELECT count(*) FROM post_images WHERE post_id = %s) < %s",
            (listing_id, item["file_id"], item.get("kind", "photo"), listing_id, config.MAX_MEDIA),
            retry=False,
        )
        return count == 1

    async def get_media(self, listing_id: int) -> List[dict]:
        rows = await self._run(
            "SELECT telegram_file_id, file_type FROM post_images WHERE post_id = %s ORDER BY id",
            (listing_id,), "all",
        )
        return [{"file_id": r["telegram_file_id"], "kind": r["file_type"]} for r in rows]

    async def count_media(self, listing_id: int) -> int:
        row = await self._run(
            "SELECT count(*) AS n FROM post_images WHERE post_id = %s", (listing_id,), "one"
        )
        return row["n"]

    async def delete_media(self, listing_id: int) -> int:
        return await self._run("DELETE FROM post_images WHERE post_id = %s", (listing_id,))

    # ────────────────────── clicks / stats ──────────────────────

    async def record_click(self, listing_id: int, clicker_id: int, kind: str) -> None:
        await self._run(
            "INSERT INTO post_clicks (post_id, user_telegram_id, click_type) VALUES (%s, %s, %s)",
            (listing_id, clicker_id, kind), retry=False,
        )

    async def get_click_stats(self, listing_id: int) -> dict:
        return await self._run(
            """
            SELECT count(*)                                          AS total_clicks,
                   count(DISTINCT user_telegram_id)                  AS unique_clickers,
                   count(*) FILTER (WHERE click_type = 'contact')    AS contact_clicks,
                   count(*) FILTER (WHERE click_type = 'view')       AS view_clicks
              FROM post_clicks WHERE post_id = %s
            """,
            (listing_id,), "one",
        )

    async def prune_clicks(self, older_than_days: int = config.CLICK_RETENTION_DAYS) -> int:
        return await self._run(
            "DELETE FROM post_clicks WHERE created_at < now() - make_interval(days => %s)",
            (older_than_days,),
        )

    async def get_aggregate_stats(self) -> dict:
        return await self._run(
            """
            SELECT (SELECT count(*) FROM users WHERE is_active)                  AS total_users,
                   (SELECT count(*) FROM posts WHERE submitted_at IS NOT NULL)   AS total_posts,
                   (SELECT count(*) FROM posts WHERE status = 'pending'
                                                AND submitted_at IS NOT NULL)    AS pending_posts,
                   (SELECT count(*) FROM posts WHERE status = 'published')       AS published_posts,
                   (SELECT count(*) FROM posts WHERE status = 'rented')          AS rented_posts,
                   (SELECT count(*) FROM post_clicks)                            AS total_clicks
            """,
            (), "one",
        )

    async def get_posts_with_stats(self, limit: int = 5) -> List[dict]:
        """Published/rented listings ranked by clicks (dashboard + /admin)."""
        return await self._run(
            """
            SELECT p.id, p.title, p.location, p.status,
                   count(c.id)                        AS total_clicks,
                   count(DISTINCT c.user_telegram_id) AS unique_clickers
              FROM posts p
              LEFT JOIN post_clicks c ON c.post_id = p.id
             WHERE p.status IN ('published', 'rented')
             GROUP BY p.id
             ORDER BY total_clicks DESC, p.id DESC
             LIMIT %s
            """,
            (limit,), "all",
        )
