from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from walletauth.logging import get_logger
from walletauth.storage.models import (
    ClientMeta,
    RotationOutcome,
    SessionRecord,
    is_active,
    utcnow,
)


class MemoryStore:
    """In-memory session store, optionally persisted to a JSON state file."""

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, SessionRecord] = {}
        # RLock for all data operations; rotate/revoke decisions happen under it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state(self.fs_root)

    def _state_path(self, fs_root: Path) -> Path:
        state_dir = fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "sessions.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        return None

    def is_active(self, record: SessionRecord | None, now: datetime | None = None) -> bool:
        return is_active(record, now)

    def _commit(self, changed: Dict[str, SessionRecord]) -> None:
        """Write the state file with ``changed`` applied, then swap it in.

        A failed write leaves the in-memory sessions untouched.
        """
        self._persist_state({**self.sessions, **changed})
        self.sessions.update(changed)

    # sessions
    def create(self, record: SessionRecord) -> None:
        with self._data_lock:
            if record.sid in self.sessions:
                self.logger.info("session_create_duplicate_ignored", sid=record.sid)
                return
            self._commit({record.sid: replace(record)})

    def get_by_sid(self, sid: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.sessions.get(sid)
            # hand out copies so callers never mutate stored state
            return replace(record) if record else None

    def rotate_refresh_jti(
        self,
        sid: str,
        expected_jti: str,
        new_jti: str,
        new_expires_at: datetime,
        *,
        client: ClientMeta | None = None,
    ) -> RotationOutcome:
        with self._data_lock:
            record = self.sessions.get(sid)
            now = utcnow()
            if not is_active(record, now):
                return RotationOutcome.INACTIVE
            if record.current_refresh_jti != expected_jti:
                self._commit({sid: replace(record, revoked_at=now)})
                return RotationOutcome.REUSED
            rotated = replace(
                record,
                current_refresh_jti=new_jti,
                refresh_expires_at=new_expires_at,
                last_refresh_at=now,
            )
            if client is not None:
                rotated.last_refresh_ip = client.ip
                rotated.last_refresh_user_agent = client.user_agent
            self._commit({sid: rotated})
            return RotationOutcome.ROTATED

    def revoke_sid(self, sid: str) -> bool:
        with self._data_lock:
            record = self.sessions.get(sid)
            if record is None or record.revoked_at is not None:
                return False
            self._commit({sid: replace(record, revoked_at=utcnow())})
            return True

    def revoke_all_for_user(self, user_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = {
                sid: replace(record, revoked_at=now)
                for sid, record in self.sessions.items()
                if record.user_id == user_id and record.revoked_at is None
            }
            if revoked:
                self._commit(revoked)
            return len(revoked)

    def invalidate_access_before(self, sid: str, ts: datetime) -> bool:
        with self._data_lock:
            record = self.sessions.get(sid)
            if record is None:
                return False
            self._commit({sid: replace(record, invalidate_before=ts)})
            return True

    def list_active_for_user(
        self, user_id: str, aud: str | None = None
    ) -> List[SessionRecord]:
        with self._data_lock:
            now = utcnow()
            found = [
                replace(record)
                for record in self.sessions.values()
                if record.user_id == user_id
                and (aud is None or record.aud == aud)
                and is_active(record, now)
            ]
        found.sort(key=lambda record: record.created_at, reverse=True)
        return found

    def _persist_state(self, sessions: Dict[str, SessionRecord]) -> None:
        if self.fs_root is None:
            return
        state = {
            "sessions": [self._serialize_session(s) for s in sessions.values()],
        }
        path = self._state_path(self.fs_root)
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self, fs_root: Path) -> bool:
        path = self._state_path(fs_root)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.sessions = {
            s["sid"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info("memory_store_state_loaded", sessions=len(self.sessions))
        return True

    def _serialize_session(self, record: SessionRecord) -> dict:
        return {
            "sid": record.sid,
            "user_id": record.user_id,
            "sub": record.sub,
            "aud": record.aud,
            "current_refresh_jti": record.current_refresh_jti,
            "created_at": self._serialize_datetime(record.created_at),
            "refresh_expires_at": self._serialize_datetime(record.refresh_expires_at),
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "invalidate_before": self._serialize_datetime(record.invalidate_before),
            "chain_id": record.chain_id,
            "created_ip": record.created_ip,
            "created_user_agent": record.created_user_agent,
            "last_refresh_at": self._serialize_datetime(record.last_refresh_at),
            "last_refresh_ip": record.last_refresh_ip,
            "last_refresh_user_agent": record.last_refresh_user_agent,
        }

    def _deserialize_session(self, data: dict) -> SessionRecord:
        return SessionRecord(
            sid=data["sid"],
            user_id=data["user_id"],
            sub=data["sub"],
            aud=data["aud"],
            current_refresh_jti=data["current_refresh_jti"],
            created_at=self._deserialize_datetime(data["created_at"]),
            refresh_expires_at=self._deserialize_datetime(data["refresh_expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            invalidate_before=self._deserialize_datetime(data.get("invalidate_before")),
            chain_id=data.get("chain_id"),
            created_ip=data.get("created_ip"),
            created_user_agent=data.get("created_user_agent"),
            last_refresh_at=self._deserialize_datetime(data.get("last_refresh_at")),
            last_refresh_ip=data.get("last_refresh_ip"),
            last_refresh_user_agent=data.get("last_refresh_user_agent"),
        )
