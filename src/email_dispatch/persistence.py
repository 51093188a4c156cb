# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed persistence layer for the email dispatch engine.

This module provides the Persistence class that handles all database
operations of the dispatch engine, including:

- The admin settings singleton (wholesale replace)
- Per-user email preferences with lazy first-contact creation
- Campaign records and their guarded status transitions
- The append-only delivery log and its provider status upgrades
- Per-recipient daily send counters used by the rate limiter
- Maintained per-status log counters used by reporting

The persistence layer uses aiosqlite. Each operation opens and closes its
own connection, making it safe for concurrent use by dispatch workers. Every
operation that must be atomic (rate-limit reservation, campaign claim, log
insert with its counters, status upgrade) runs as a single statement or a
single transaction.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/email_dispatch.db")
        await persistence.init_db()

        allowed = await persistence.reserve_send_slot("user_1", "2025-01-31", 5)
        claimed = await persistence.transition_campaign(
            "cmp_1", ["DRAFT", "SCHEDULED"], "SENDING"
        )
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiosqlite

from .errors import StoreUnavailable

# Scope key of the log counters that aggregate every log row.
ALL_SCOPE = "*"

CAMPAIGN_COUNTERS = ("success_count", "failure_count", "skipped_count", "open_count", "click_count")
LOG_TIMESTAMPS = ("sent_at", "delivered_at", "opened_at", "clicked_at", "bounced_at")


class Persistence:
    """Async SQLite persistence layer for dispatch state.

    Attributes:
        db_path: Path to the SQLite database file.
        busy_timeout: Seconds a connection waits for a competing writer.
    """

    def __init__(self, db_path: str = "/data/email_dispatch.db", busy_timeout: float = 30.0):
        """Initialize the persistence layer with a database path.

        Args:
            db_path: Path to the SQLite database file. Each operation opens its
                own connection, so an in-memory database is not supported.
            busy_timeout: Seconds to wait on a locked database before failing.
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                yield db
        except aiosqlite.OperationalError as exc:
            raise StoreUnavailable(f"Database error: {exc}") from exc

    async def init_db(self) -> None:
        """Create the schema. Idempotent."""
        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_settings (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    payload TEXT NOT NULL,
                    updated_by TEXT,
                    updated_by_name TEXT,
                    updated_at TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_preferences (
                    user_id TEXT PRIMARY KEY,
                    sales_emails INTEGER NOT NULL DEFAULT 1,
                    offer_emails INTEGER NOT NULL DEFAULT 1,
                    new_product_emails INTEGER NOT NULL DEFAULT 1,
                    order_confirmation INTEGER NOT NULL DEFAULT 1,
                    order_updates INTEGER NOT NULL DEFAULT 1,
                    unsubscribed_all INTEGER NOT NULL DEFAULT 0,
                    email_verified INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_preferences_subscribed ON email_preferences(unsubscribed_all, created_at)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_campaigns (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    template_data TEXT NOT NULL DEFAULT '{}',
                    target_all INTEGER NOT NULL DEFAULT 0,
                    target_user_ids TEXT NOT NULL DEFAULT '[]',
                    total_recipients INTEGER NOT NULL DEFAULT 0,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    failure_count INTEGER NOT NULL DEFAULT 0,
                    skipped_count INTEGER NOT NULL DEFAULT 0,
                    open_count INTEGER NOT NULL DEFAULT 0,
                    click_count INTEGER NOT NULL DEFAULT 0,
                    scheduled_at TEXT,
                    sent_at TEXT,
                    error TEXT,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_campaigns_status ON email_campaigns(status, scheduled_at)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_logs (
                    id TEXT PRIMARY KEY,
                    campaign_id TEXT,
                    user_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    type TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    status TEXT NOT NULL,
                    reason TEXT,
                    error TEXT,
                    message_id TEXT,
                    created_at TEXT NOT NULL,
                    sent_at TEXT,
                    delivered_at TEXT,
                    opened_at TEXT,
                    clicked_at TEXT,
                    bounced_at TEXT
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_logs_message_id ON email_logs(message_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_logs_campaign ON email_logs(campaign_id, created_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_logs_status ON email_logs(status, created_at)")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS send_counters (
                    user_id TEXT NOT NULL,
                    day TEXT NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (user_id, day)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS log_stats (
                    scope TEXT NOT NULL,
                    status TEXT NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (scope, status)
                )
                """
            )
            await db.commit()

    # Settings -----------------------------------------------------------------
    async def get_settings(self) -> Optional[Dict[str, Any]]:
        """Return the current settings record, or None if never saved."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT payload, updated_by, updated_by_name, updated_at FROM email_settings WHERE id = 1"
            ) as cur:
                row = await cur.fetchone()
        if not row:
            return None
        settings = json.loads(row[0])
        settings.update({"updated_by": row[1], "updated_by_name": row[2], "updated_at": row[3]})
        return settings

    async def save_settings(self, settings: Dict[str, Any]) -> None:
        """Replace the settings singleton wholesale."""
        payload = {k: v for k, v in settings.items() if k not in ("updated_by", "updated_by_name", "updated_at")}
        async with self._connect() as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO email_settings (id, payload, updated_by, updated_by_name, updated_at)
                VALUES (1, ?, ?, ?, ?)
                """,
                (
                    json.dumps(payload),
                    settings.get("updated_by"),
                    settings.get("updated_by_name"),
                    settings.get("updated_at"),
                ),
            )
            await db.commit()

    # Preferences --------------------------------------------------------------
    _PREFERENCE_BOOLS = (
        "sales_emails",
        "offer_emails",
        "new_product_emails",
        "order_confirmation",
        "order_updates",
        "unsubscribed_all",
        "email_verified",
    )

    def _decode_preference(self, row: Sequence[Any], columns: Sequence[str]) -> Dict[str, Any]:
        pref = dict(zip(columns, row))
        for flag in self._PREFERENCE_BOOLS:
            pref[flag] = bool(pref[flag])
        return pref

    async def get_preference(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM email_preferences WHERE user_id = ?", (user_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_preference(row, cols)

    async def ensure_preference(self, user_id: str, now_ts: str, email_verified: bool = False) -> Dict[str, Any]:
        """Return the user's preference, creating the first-contact defaults if missing."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO email_preferences (user_id, email_verified, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO NOTHING
                """,
                (user_id, 1 if email_verified else 0, now_ts, now_ts),
            )
            await db.commit()
            async with db.execute("SELECT * FROM email_preferences WHERE user_id = ?", (user_id,)) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
        return self._decode_preference(row, cols)

    async def upsert_preference(self, user_id: str, values: Dict[str, Any], now_ts: str) -> Dict[str, Any]:
        """Create or update a preference row with the given flags."""
        flags = {k: (1 if v else 0) for k, v in values.items() if k in self._PREFERENCE_BOOLS}
        columns = ["user_id", *flags.keys(), "created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in columns)
        assignments = ", ".join(f"{k} = excluded.{k}" for k in flags)
        update_clause = f"{assignments}, updated_at = excluded.updated_at" if assignments else "updated_at = excluded.updated_at"
        async with self._connect() as db:
            await db.execute(
                f"""
                INSERT INTO email_preferences ({', '.join(columns)})
                VALUES ({placeholders})
                ON CONFLICT(user_id) DO UPDATE SET {update_clause}
                """,
                (user_id, *flags.values(), now_ts, now_ts),
            )
            await db.commit()
            async with db.execute("SELECT * FROM email_preferences WHERE user_id = ?", (user_id,)) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
        return self._decode_preference(row, cols)

    async def list_subscribed_user_ids(self) -> List[str]:
        """Users with a preference row that did not unsubscribe from everything."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT user_id FROM email_preferences WHERE unsubscribed_all = 0 ORDER BY created_at, user_id"
            ) as cur:
                rows = await cur.fetchall()
        return [row[0] for row in rows]

    async def count_preferences(self) -> int:
        async with self._connect() as db:
            async with db.execute("SELECT COUNT(*) FROM email_preferences") as cur:
                (count,) = await cur.fetchone()
        return int(count)

    # Campaigns ----------------------------------------------------------------
    @staticmethod
    def _decode_campaign(row: Sequence[Any], columns: Sequence[str]) -> Dict[str, Any]:
        campaign = dict(zip(columns, row))
        campaign["template_data"] = json.loads(campaign.get("template_data") or "{}")
        campaign["target_user_ids"] = json.loads(campaign.get("target_user_ids") or "[]")
        campaign["target_all"] = bool(campaign.get("target_all"))
        return campaign

    @staticmethod
    def _encode_campaign_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
        encoded = dict(fields)
        if "template_data" in encoded:
            encoded["template_data"] = json.dumps(encoded["template_data"] or {})
        if "target_user_ids" in encoded:
            encoded["target_user_ids"] = json.dumps(list(encoded["target_user_ids"] or []))
        if "target_all" in encoded:
            encoded["target_all"] = 1 if encoded["target_all"] else 0
        return encoded

    async def insert_campaign(self, campaign: Dict[str, Any]) -> None:
        fields = self._encode_campaign_fields(campaign)
        columns = list(fields.keys())
        async with self._connect() as db:
            await db.execute(
                f"INSERT INTO email_campaigns ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                tuple(fields[c] for c in columns),
            )
            await db.commit()

    async def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM email_campaigns WHERE id = ?", (campaign_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_campaign(row, cols)

    async def list_campaigns(
        self, status: Optional[str] = None, *, limit: int = 20, offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Return campaigns newest first, optionally filtered by status."""
        query = "SELECT * FROM email_campaigns"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        async with self._connect() as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_campaign(row, cols) for row in rows]

    async def count_campaigns(self, statuses: Optional[Iterable[str]] = None) -> int:
        query = "SELECT COUNT(*) FROM email_campaigns"
        params: tuple = ()
        if statuses is not None:
            params = tuple(statuses)
            query += f" WHERE status IN ({', '.join('?' for _ in params)})"
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                (count,) = await cur.fetchone()
        return int(count)

    async def transition_campaign(
        self,
        campaign_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Atomically move a campaign to ``to_status`` if its status is one of ``from_statuses``.

        Extra ``fields`` are written in the same statement. Returns False when
        no row matched, i.e. the campaign is missing or in another status.
        """
        updates = self._encode_campaign_fields(fields or {})
        updates["status"] = to_status
        set_clause = ", ".join(f"{k} = ?" for k in updates)
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                UPDATE email_campaigns SET {set_clause}
                WHERE id = ? AND status IN ({', '.join('?' for _ in from_statuses)})
                """,
                (*updates.values(), campaign_id, *from_statuses),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def update_campaign(
        self, campaign_id: str, fields: Dict[str, Any], allowed_statuses: Sequence[str]
    ) -> bool:
        """Update campaign fields only while its status is one of ``allowed_statuses``."""
        if not fields:
            return False
        updates = self._encode_campaign_fields(fields)
        set_clause = ", ".join(f"{k} = ?" for k in updates)
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                UPDATE email_campaigns SET {set_clause}
                WHERE id = ? AND status IN ({', '.join('?' for _ in allowed_statuses)})
                """,
                (*updates.values(), campaign_id, *allowed_statuses),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def delete_campaign(self, campaign_id: str, allowed_statuses: Sequence[str]) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                f"DELETE FROM email_campaigns WHERE id = ? AND status IN ({', '.join('?' for _ in allowed_statuses)})",
                (campaign_id, *allowed_statuses),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def increment_campaign_counters(self, campaign_id: str, **deltas: int) -> None:
        """Add deltas to the running counters of a campaign."""
        changes = {k: int(v) for k, v in deltas.items() if k in CAMPAIGN_COUNTERS and v}
        if not changes:
            return
        set_clause = ", ".join(f"{k} = {k} + ?" for k in changes)
        async with self._connect() as db:
            await db.execute(
                f"UPDATE email_campaigns SET {set_clause} WHERE id = ?",
                (*changes.values(), campaign_id),
            )
            await db.commit()

    async def due_campaign_ids(self, now_ts: str) -> List[str]:
        """Scheduled campaigns whose ``scheduled_at`` has been reached."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT id FROM email_campaigns
                WHERE status = 'SCHEDULED' AND scheduled_at IS NOT NULL AND scheduled_at <= ?
                ORDER BY scheduled_at, id
                """,
                (now_ts,),
            ) as cur:
                rows = await cur.fetchall()
        return [row[0] for row in rows]

    # Logs ---------------------------------------------------------------------
    @staticmethod
    async def _bump_stats(db: aiosqlite.Connection, campaign_id: Optional[str], status: str, delta: int) -> None:
        scopes = [ALL_SCOPE] if not campaign_id else [ALL_SCOPE, campaign_id]
        for scope in scopes:
            await db.execute(
                """
                INSERT INTO log_stats (scope, status, count) VALUES (?, ?, ?)
                ON CONFLICT(scope, status) DO UPDATE SET count = count + excluded.count
                """,
                (scope, status, delta),
            )

    async def insert_log(self, log: Dict[str, Any]) -> None:
        """Append a log row and bump its status counters in one transaction."""
        columns = list(log.keys())
        async with self._connect() as db:
            await db.execute(
                f"INSERT INTO email_logs ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                tuple(log[c] for c in columns),
            )
            await self._bump_stats(db, log.get("campaign_id"), log["status"], 1)
            await db.commit()

    async def get_log(self, log_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM email_logs WHERE id = ?", (log_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def get_log_by_message_id(self, message_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM email_logs WHERE message_id = ? ORDER BY created_at DESC LIMIT 1", (message_id,)
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def upgrade_log_status(
        self,
        message_id: str,
        new_status: str,
        allowed_from: Sequence[str],
        timestamp_column: str,
        ts: str,
    ) -> Optional[Dict[str, Any]]:
        """Move a log row to ``new_status`` if it currently is in ``allowed_from``.

        Runs under an immediate transaction so the read of the previous
        status and the write cannot interleave with a concurrent callback.

        Returns:
            The row as it was before the upgrade, or None when no row matched
            or the transition was not allowed.
        """
        if timestamp_column not in LOG_TIMESTAMPS:
            raise ValueError(f"Unknown log timestamp column: {timestamp_column}")
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            async with db.execute(
                "SELECT * FROM email_logs WHERE message_id = ? ORDER BY created_at DESC LIMIT 1", (message_id,)
            ) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description] if row else []
            if not row:
                await db.rollback()
                return None
            previous = dict(zip(cols, row))
            if previous["status"] not in allowed_from:
                await db.rollback()
                return None
            await db.execute(
                f"UPDATE email_logs SET status = ?, {timestamp_column} = ? WHERE id = ?",
                (new_status, ts, previous["id"]),
            )
            await self._bump_stats(db, previous.get("campaign_id"), previous["status"], -1)
            await self._bump_stats(db, previous.get("campaign_id"), new_status, 1)
            await db.commit()
        return previous

    async def list_logs(
        self,
        *,
        status: Optional[str] = None,
        campaign_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return log rows newest first, optionally filtered."""
        clauses = []
        params: List[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if campaign_id:
            clauses.append("campaign_id = ?")
            params.append(campaign_id)
        query = "SELECT * FROM email_logs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        async with self._connect() as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def status_counts(self, campaign_id: Optional[str] = None) -> Dict[str, int]:
        """Maintained per-status log counts, globally or for one campaign."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT status, count FROM log_stats WHERE scope = ? AND count > 0",
                (campaign_id or ALL_SCOPE,),
            ) as cur:
                rows = await cur.fetchall()
        return {status: int(count) for status, count in rows}

    # Send counters ------------------------------------------------------------
    async def reserve_send_slot(self, user_id: str, day: str, limit: int) -> bool:
        """Atomically take one send slot for (user, day).

        The conditional upsert increments the counter only while it is below
        ``limit``; ``limit <= 0`` means unlimited. Returns whether a slot was
        taken.
        """
        async with self._connect() as db:
            if limit <= 0:
                cursor = await db.execute(
                    """
                    INSERT INTO send_counters (user_id, day, count) VALUES (?, ?, 1)
                    ON CONFLICT(user_id, day) DO UPDATE SET count = count + 1
                    """,
                    (user_id, day),
                )
            else:
                cursor = await db.execute(
                    """
                    INSERT INTO send_counters (user_id, day, count) VALUES (?, ?, 1)
                    ON CONFLICT(user_id, day) DO UPDATE SET count = count + 1
                    WHERE send_counters.count < ?
                    """,
                    (user_id, day, limit),
                )
            await db.commit()
            return cursor.rowcount > 0

    async def count_sends(self, user_id: str, day: str) -> int:
        async with self._connect() as db:
            async with db.execute(
                "SELECT count FROM send_counters WHERE user_id = ? AND day = ?", (user_id, day)
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def purge_send_counters(self, before_day: str) -> int:
        """Delete counters of days strictly before ``before_day``."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM send_counters WHERE day < ?", (before_day,))
            await db.commit()
            return cursor.rowcount
