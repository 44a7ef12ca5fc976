"""Account repository: the one ``fitbit_accounts`` row per user.

Holds both the OAuth token set and the sync bookkeeping
(``last_synced_at``, ``initial_sync_completed``).  Every other component
reads and writes accounts through this class.

Schema: ``migrations/001_fitbit_sync.sql``.
"""

from __future__ import annotations

import logging
import zlib
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator
from uuid import UUID

import asyncpg

from src.services.database import Database
from src.wearables.base import FitbitAccount, OAuthTokens

logger = logging.getLogger("healthhub.wearables.accounts")

_COLUMNS = (
    "user_id, provider_user_id, access_token, refresh_token, token_type, "
    "expires_at, scope, code_verifier, pending_state, last_synced_at, "
    "initial_sync_completed"
)

# Namespace for pg advisory locks taken by sync runs (first key of the pair)
_SYNC_LOCK_NAMESPACE = 0x5F17


def _row_to_account(row: asyncpg.Record) -> FitbitAccount:
    return FitbitAccount(
        user_id=row["user_id"],
        provider_user_id=row["provider_user_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        token_type=row["token_type"],
        expires_at=row["expires_at"],
        scope=row["scope"],
        code_verifier=row["code_verifier"],
        pending_state=row["pending_state"],
        last_synced_at=row["last_synced_at"],
        initial_sync_completed=row["initial_sync_completed"],
    )


def sync_lock_key(user_id: UUID) -> int:
    """Stable signed 32-bit key for ``pg_try_advisory_lock(int, int)``."""
    key = zlib.crc32(user_id.bytes)
    return key - (1 << 32) if key >= (1 << 31) else key


class AccountRepository:
    """Persistence for ``FitbitAccount``."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get(self, user_id: UUID) -> FitbitAccount | None:
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} FROM fitbit_accounts WHERE user_id = $1", user_id
        )
        return _row_to_account(row) if row else None

    async def save_pending(
        self, user_id: UUID, code_verifier: str, pending_state: str
    ) -> None:
        """Store a new handshake, overwriting any prior pending or active row.

        Token columns are cleared so a half-finished handshake can never be
        mistaken for a connected account.  Sync bookkeeping is kept so a
        reconnect resumes incremental sync instead of re-importing history.
        """
        await self._db.execute(
            """
            INSERT INTO fitbit_accounts (user_id, code_verifier, pending_state)
            VALUES ($1, $2, $3)
            ON CONFLICT (user_id) DO UPDATE SET
                code_verifier = EXCLUDED.code_verifier,
                pending_state = EXCLUDED.pending_state,
                provider_user_id = NULL,
                access_token = NULL,
                refresh_token = NULL,
                token_type = NULL,
                expires_at = NULL,
                scope = NULL,
                updated_at = NOW()
            """,
            user_id,
            code_verifier,
            pending_state,
        )

    async def activate(self, user_id: UUID, tokens: OAuthTokens) -> None:
        """Persist exchanged tokens and clear the pending handshake."""
        await self._db.execute(
            """
            UPDATE fitbit_accounts SET
                provider_user_id = $2,
                access_token = $3,
                refresh_token = $4,
                token_type = $5,
                expires_at = $6,
                scope = $7,
                code_verifier = NULL,
                pending_state = NULL,
                updated_at = NOW()
            WHERE user_id = $1
            """,
            user_id,
            tokens.provider_user_id,
            tokens.access_token,
            tokens.refresh_token,
            tokens.token_type,
            tokens.expires_at,
            tokens.scope,
        )

    async def update_tokens(self, user_id: UUID, tokens: OAuthTokens) -> None:
        """Store a refreshed token set in place."""
        await self._db.execute(
            """
            UPDATE fitbit_accounts SET
                access_token = $2,
                refresh_token = $3,
                expires_at = $4,
                scope = COALESCE(NULLIF($5, ''), scope),
                updated_at = NOW()
            WHERE user_id = $1 AND code_verifier IS NULL
            """,
            user_id,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at,
            tokens.scope,
        )

    async def delete(self, user_id: UUID) -> bool:
        result = await self._db.execute(
            "DELETE FROM fitbit_accounts WHERE user_id = $1", user_id
        )
        return result != "DELETE 0"

    async def mark_synced(
        self, user_id: UUID, synced_at: datetime, initial_completed: bool = False
    ) -> None:
        """Record the end of a sync run.

        ``last_synced_at`` only moves forward and ``initial_sync_completed``
        never flips back to false.
        """
        await self._db.execute(
            """
            UPDATE fitbit_accounts SET
                last_synced_at = GREATEST(COALESCE(last_synced_at, $2), $2),
                initial_sync_completed = initial_sync_completed OR $3,
                updated_at = NOW()
            WHERE user_id = $1
            """,
            user_id,
            synced_at,
            initial_completed,
        )

    async def list_inactive(
        self, synced_before: datetime, limit: int
    ) -> list[FitbitAccount]:
        """Connected accounts whose last sync is missing or older than a cutoff.

        Oldest first, never-synced accounts ahead of everything else.
        """
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS} FROM fitbit_accounts
            WHERE initial_sync_completed = TRUE
              AND code_verifier IS NULL
              AND (last_synced_at IS NULL OR last_synced_at < $1)
            ORDER BY last_synced_at ASC NULLS FIRST
            LIMIT $2
            """,
            synced_before,
            limit,
        )
        return [_row_to_account(r) for r in rows]

    @asynccontextmanager
    async def sync_lease(self, user_id: UUID) -> AsyncGenerator[bool, None]:
        """Hold a per-user advisory lock for the duration of a sync run.

        Yields True when the lease was acquired, False when another run
        already holds it.  The lock is session-scoped, so the connection is
        kept checked out until the block exits.
        """
        key = sync_lock_key(user_id)
        async with self._db.connection() as conn:
            acquired = await conn.fetchval(
                "SELECT pg_try_advisory_lock($1, $2)", _SYNC_LOCK_NAMESPACE, key
            )
            try:
                yield bool(acquired)
            finally:
                if acquired:
                    await conn.execute(
                        "SELECT pg_advisory_unlock($1, $2)", _SYNC_LOCK_NAMESPACE, key
                    )
