from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from walletauth.logging import get_logger
from walletauth.storage.models import (
    ClientMeta,
    RotationOutcome,
    SessionRecord,
    is_active,
    utcnow,
)

_SESSION_COLUMNS = (
    "sid, user_id, sub, aud, current_refresh_jti, created_at, refresh_expires_at, "
    "revoked_at, invalidate_before, chain_id, created_ip, created_user_agent, "
    "last_refresh_at, last_refresh_ip, last_refresh_user_agent"
)


class PostgresStore:
    """Postgres-backed session store.

    Session rows are never deleted; revocation and expiry are recorded in
    place so superseded refresh jtis stay available for audit.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``auth_session`` table and its user index if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_session (
                    sid TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    sub TEXT NOT NULL,
                    aud TEXT NOT NULL,
                    current_refresh_jti TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    refresh_expires_at TIMESTAMPTZ NOT NULL,
                    revoked_at TIMESTAMPTZ,
                    invalidate_before TIMESTAMPTZ,
                    chain_id BIGINT,
                    created_ip TEXT,
                    created_user_agent TEXT,
                    last_refresh_at TIMESTAMPTZ,
                    last_refresh_ip TEXT,
                    last_refresh_user_agent TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)"
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def is_active(self, record: SessionRecord | None, now: datetime | None = None) -> bool:
        return is_active(record, now)

    @staticmethod
    def _row_to_session(row: dict) -> SessionRecord:
        return SessionRecord(
            sid=row["sid"],
            user_id=row["user_id"],
            sub=row["sub"],
            aud=row["aud"],
            current_refresh_jti=row["current_refresh_jti"],
            created_at=row["created_at"],
            refresh_expires_at=row["refresh_expires_at"],
            revoked_at=row.get("revoked_at"),
            invalidate_before=row.get("invalidate_before"),
            chain_id=row.get("chain_id"),
            created_ip=row.get("created_ip"),
            created_user_agent=row.get("created_user_agent"),
            last_refresh_at=row.get("last_refresh_at"),
            last_refresh_ip=row.get("last_refresh_ip"),
            last_refresh_user_agent=row.get("last_refresh_user_agent"),
        )

    # sessions
    def create(self, record: SessionRecord) -> None:
        with self._connect() as conn:
            result = conn.execute(
                f"""
                INSERT INTO auth_session ({_SESSION_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (sid) DO NOTHING
                """,
                (
                    record.sid,
                    record.user_id,
                    record.sub,
                    record.aud,
                    record.current_refresh_jti,
                    record.created_at,
                    record.refresh_expires_at,
                    record.revoked_at,
                    record.invalidate_before,
                    record.chain_id,
                    record.created_ip,
                    record.created_user_agent,
                    record.last_refresh_at,
                    record.last_refresh_ip,
                    record.last_refresh_user_agent,
                ),
            )
            if result.rowcount == 0:
                self.logger.info("session_create_duplicate_ignored", sid=record.sid)

    def get_by_sid(self, sid: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE sid = %s", (sid,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def rotate_refresh_jti(
        self,
        sid: str,
        expected_jti: str,
        new_jti: str,
        new_expires_at: datetime,
        *,
        client: ClientMeta | None = None,
    ) -> RotationOutcome:
        client = client or ClientMeta()
        now = utcnow()
        with self._connect() as conn:
            # Row lock serialises concurrent refreshes of the same session;
            # the decision and its write commit together.
            row = conn.execute(
                """
                SELECT current_refresh_jti, revoked_at, refresh_expires_at
                FROM auth_session WHERE sid = %s FOR UPDATE
                """,
                (sid,),
            ).fetchone()
            if not row or row["revoked_at"] is not None or row["refresh_expires_at"] <= now:
                return RotationOutcome.INACTIVE
            if row["current_refresh_jti"] == expected_jti:
                result = conn.execute(
                    """
                    UPDATE auth_session
                    SET current_refresh_jti = %s,
                        refresh_expires_at = %s,
                        last_refresh_at = %s,
                        last_refresh_ip = %s,
                        last_refresh_user_agent = %s
                    WHERE sid = %s AND current_refresh_jti = %s AND revoked_at IS NULL
                    """,
                    (
                        new_jti,
                        new_expires_at,
                        now,
                        client.ip,
                        client.user_agent,
                        sid,
                        expected_jti,
                    ),
                )
                if result.rowcount == 1:
                    return RotationOutcome.ROTATED
            conn.execute(
                "UPDATE auth_session SET revoked_at = %s WHERE sid = %s AND revoked_at IS NULL",
                (now, sid),
            )
            return RotationOutcome.REUSED

    def revoke_sid(self, sid: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET revoked_at = %s WHERE sid = %s AND revoked_at IS NULL",
                (utcnow(), sid),
            )
            return result.rowcount > 0

    def revoke_all_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (utcnow(), user_id),
            )
            return result.rowcount

    def invalidate_access_before(self, sid: str, ts: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET invalidate_before = %s WHERE sid = %s",
                (ts, sid),
            )
            return result.rowcount > 0

    def list_active_for_user(
        self, user_id: str, aud: str | None = None
    ) -> List[SessionRecord]:
        query = (
            f"SELECT {_SESSION_COLUMNS} FROM auth_session "
            "WHERE user_id = %s AND revoked_at IS NULL AND refresh_expires_at > %s"
        )
        params: list = [user_id, utcnow()]
        if aud is not None:
            query += " AND aud = %s"
            params.append(aud)
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_session(row) for row in rows]
