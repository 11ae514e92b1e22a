from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sentinel.logging import get_logger
from sentinel.storage.errors import ConstraintViolation, StoreUnavailable
from sentinel.storage.models import (
    GeoLocation,
    Session,
    SessionStatus,
    User,
)

_MIN_DATETIME = datetime.min.replace(tzinfo=timezone.utc)


def _activity_key(session: Session) -> datetime:
    return session.last_active_at or session.created_at or _MIN_DATETIME


class MemoryStore:
    """In-process durable store for tests and single-node development.

    State is mirrored to ``<fs_root>/state/memory_store.json`` after every mutation
    so a restarted dev server keeps its users and sessions. Returned records are
    copies; callers mutate state only through the store methods.
    """

    def __init__(self, fs_root: str = "/tmp/sentinel", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # RLock so helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        value = datetime.fromisoformat(raw)
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    # -- users ---------------------------------------------------------------

    def create_user(
        self, email: str, name: Optional[str] = None, *, role: str = "user"
    ) -> User:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=normalized, name=name, role=role)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def list_users(self, limit: int = 500) -> List[User]:
        with self._data_lock:
            users = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in users[:limit]]

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def _update_user(self, user_id: str, **fields) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def set_user_verified(self, user_id: str, verified: bool = True) -> Optional[User]:
        return self._update_user(user_id, is_verified=verified)

    def increment_risk_score(self, user_id: str, delta: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            return self._update_user(user_id, risk_score=user.risk_score + delta)

    def reset_risk_score(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, risk_score=0)

    # -- sessions ------------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}
                )
            if any(
                s.refresh_token_hash == session.refresh_token_hash
                for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already bound", {"field": "refresh_token_hash"}
                )
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def find_active_session_by_token(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == token_hash
                    and s.status == SessionStatus.ACTIVE
                ),
                None,
            )
            return replace(sess) if sess else None

    def list_user_sessions(
        self, user_id: str, statuses: Optional[Iterable[SessionStatus]] = None
    ) -> List[Session]:
        wanted = set(statuses) if statuses is not None else None
        with self._data_lock:
            matches = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (wanted is None or s.status in wanted)
            ]
        return sorted(matches, key=_activity_key, reverse=True)

    def count_active_sessions(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for s in self.sessions.values()
                if s.user_id == user_id
                and s.status == SessionStatus.ACTIVE
                and s.refresh_token_expiry > now
            )

    def count_active_sessions_by_user(self, now: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._data_lock:
            for s in self.sessions.values():
                if s.status == SessionStatus.ACTIVE and s.refresh_token_expiry > now:
                    counts[s.user_id] = counts.get(s.user_id, 0) + 1
        return counts

    def has_session_with_fingerprint(self, user_id: str, fingerprint: str) -> bool:
        with self._data_lock:
            return any(
                s.user_id == user_id and s.device_fingerprint == fingerprint
                for s in self.sessions.values()
            )

    def latest_session(self, user_id: str) -> Optional[Session]:
        sessions = self.list_user_sessions(user_id)
        return sessions[0] if sessions else None

    def _update_session(self, session_id: str, **fields) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            for name, value in fields.items():
                setattr(sess, name, value)
            self._persist_state()
            return replace(sess)

    def touch_session(self, session_id: str, at: datetime) -> Optional[Session]:
        return self._update_session(session_id, last_active_at=at)

    def record_ip_change(
        self, session_id: str, ip: str, at: datetime, location: GeoLocation
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            return self._update_session(
                session_id,
                ip_last_seen=ip,
                ip_last_changed_at=at,
                ip_change_count=sess.ip_change_count + 1,
                location=location,
                last_active_at=at,
            )

    def set_session_status(
        self, session_id: str, status: SessionStatus
    ) -> Optional[Session]:
        return self._update_session(session_id, status=status)

    def set_session_suspicious(self, session_id: str, flag: bool) -> Optional[Session]:
        return self._update_session(session_id, is_suspicious=flag)

    def schedule_session_expiry(self, session_id: str, expire_at: datetime) -> None:
        self._update_session(session_id, expire_at=expire_at)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, s in self.sessions.items()
                if s.expire_at is not None and s.expire_at <= now
            ]
            for sid in doomed:
                self.sessions.pop(sid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # -- persistence ---------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StoreUnavailable(
                "failed to persist in-memory state", {"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_store_load_failed", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "is_verified": user.is_verified,
            "risk_score": user.risk_score,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            role=data.get("role", "user"),
            is_verified=data.get("is_verified", False),
            risk_score=int(data.get("risk_score", 0)),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or datetime.now(timezone.utc),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_hash": session.refresh_token_hash,
            "device_fingerprint": session.device_fingerprint,
            "user_agent": session.user_agent,
            "device_name": session.device_name,
            "ip_first_seen": session.ip_first_seen,
            "ip_last_seen": session.ip_last_seen,
            "ip_last_changed_at": self._serialize_datetime(session.ip_last_changed_at),
            "ip_change_count": session.ip_change_count,
            "location": session.location.to_dict(),
            "status": session.status.value,
            "created_at": self._serialize_datetime(session.created_at),
            "last_active_at": self._serialize_datetime(session.last_active_at),
            "refresh_token_expiry": self._serialize_datetime(session.refresh_token_expiry),
            "is_legacy": session.is_legacy,
            "is_suspicious": session.is_suspicious,
            "expire_at": self._serialize_datetime(session.expire_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            device_fingerprint=data.get("device_fingerprint", ""),
            user_agent=data.get("user_agent", ""),
            device_name=data.get("device_name", "Unknown Device"),
            ip_first_seen=data.get("ip_first_seen", ""),
            ip_last_seen=data.get("ip_last_seen", ""),
            ip_last_changed_at=self._deserialize_datetime(data.get("ip_last_changed_at")),
            ip_change_count=int(data.get("ip_change_count", 0)),
            location=GeoLocation.from_dict(data.get("location")),
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or datetime.now(timezone.utc),
            last_active_at=self._deserialize_datetime(data.get("last_active_at")),
            refresh_token_expiry=self._deserialize_datetime(data["refresh_token_expiry"]),
            is_legacy=data.get("is_legacy", False),
            is_suspicious=data.get("is_suspicious", False),
            expire_at=self._deserialize_datetime(data.get("expire_at")),
        )
