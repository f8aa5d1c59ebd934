from __future__ import annotations

import json
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    FIRST_USER_ID,
    Activity,
    EmailVerification,
    Provider,
    Role,
    Session,
    SigninEvent,
    SigninOutcome,
    User,
    normalize_email,
    now_ts,
)


class MemoryStore:
    """In-memory identity store with JSON snapshots under ``fs_root``.

    Every mutation runs under one ``RLock`` so unique checks and conditional
    updates are atomic with respect to each other. Callers receive copies.
    """

    def __init__(self, fs_root: str = "/tmp/gatehouse") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.sessions: Dict[str, Session] = {}
        # refresh token -> auth token
        self._refresh_index: Dict[str, str] = {}
        self.signin_events: List[SigninEvent] = []
        self.email_verifications: Dict[str, EmailVerification] = {}
        self._user_seq = 1
        self._event_seq = 1
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    # users
    def _email_taken(self, email: str, *, exclude_id: Optional[int] = None) -> bool:
        return any(
            u.email == email and u.id != exclude_id for u in self.users.values()
        )

    def _insert_user(self, user: User, user_id: int) -> User:
        email = normalize_email(user.email)
        if self._email_taken(email):
            raise ConstraintViolation("email already exists", {"field": "email"})
        roles = Role(user.roles)
        if user_id == FIRST_USER_ID:
            roles |= Role.SUPER
        now = now_ts()
        created = replace(
            user,
            id=user_id,
            email=email,
            roles=roles,
            created_at=user.created_at or now,
            updated_at=user.updated_at or user.created_at or now,
        )
        self.users[user_id] = created
        self._user_seq = max(self._user_seq, user_id + 1)
        self._persist_state()
        return replace(created)

    def create_user(self, user: User) -> User:
        with self._data_lock:
            return self._insert_user(user, self._user_seq)

    def create_first_user(self, user: User) -> User:
        with self._data_lock:
            if self.users:
                raise ConstraintViolation("store already has users", {"field": "id"})
            return self._insert_user(user, FIRST_USER_ID)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def list_users(self, start_id: int, limit: int) -> List[User]:
        """Up to ``limit`` users with ``id >= start_id`` ordered by id."""
        with self._data_lock:
            ids = sorted(uid for uid in self.users if uid >= start_id)[: max(limit, 0)]
            return [replace(self.users[uid]) for uid in ids]

    def get_users(self, ids: Iterable[int]) -> List[User]:
        with self._data_lock:
            wanted = sorted(set(ids))
            return [replace(self.users[uid]) for uid in wanted if uid in self.users]

    def update_user(self, user_id: int, changes: Dict[str, Any]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            values = dict(changes)
            if "email" in values:
                values["email"] = normalize_email(values["email"])
                if self._email_taken(values["email"], exclude_id=user_id):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "roles" in values:
                values["roles"] = Role(values["roles"])
                if user_id == FIRST_USER_ID:
                    values["roles"] |= Role.SUPER
            values["updated_at"] = now_ts()
            updated = replace(user, **values)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def touch_user(self, user_id: int, active_at: int) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            self.users[user_id] = replace(user, active_at=active_at)
            self._persist_state()

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self._drop_sessions(lambda s: s.user_id == user_id)
            self.signin_events = [e for e in self.signin_events if e.user_id != user_id]
            self._persist_state()
            return True

    # sessions
    def _drop_sessions(self, predicate) -> int:
        stale = [sess for sess in self.sessions.values() if predicate(sess)]
        for sess in stale:
            self.sessions.pop(sess.auth_token, None)
            self._refresh_index.pop(sess.refresh_token, None)
        return len(stale)

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if session.auth_token in self.sessions:
                raise ConstraintViolation("token already exists", {"field": "auth_token"})
            if session.refresh_token in self._refresh_index:
                raise ConstraintViolation(
                    "token already exists", {"field": "refresh_token"}
                )
            stored = replace(session, created_at=session.created_at or now_ts())
            self.sessions[stored.auth_token] = stored
            self._refresh_index[stored.refresh_token] = stored.auth_token
            self._persist_state()
            return replace(stored)

    def get_session(self, auth_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(auth_token)
            return replace(sess) if sess else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            auth_token = self._refresh_index.get(refresh_token)
            sess = self.sessions.get(auth_token) if auth_token else None
            return replace(sess) if sess else None

    def extend_session(
        self, auth_token: str, now: int, new_expiry: int
    ) -> Optional[Session]:
        """Slide the auth expiry forward only while the token is still valid."""
        with self._data_lock:
            sess = self.sessions.get(auth_token)
            if not sess or sess.auth_token_expiry <= now:
                return None
            updated = replace(
                sess, auth_token_expiry=max(sess.auth_token_expiry, new_expiry)
            )
            self.sessions[auth_token] = updated
            self._persist_state()
            return replace(updated)

    def consume_refresh_token(self, refresh_token: str, now: int) -> Optional[Session]:
        """Mark an unexpired, unconsumed refresh token as used and expire its
        auth token in one step. Returns the consumed session."""
        with self._data_lock:
            auth_token = self._refresh_index.get(refresh_token)
            sess = self.sessions.get(auth_token) if auth_token else None
            if (
                not sess
                or sess.refresh_consumed_at is not None
                or sess.refresh_token_expiry <= now
            ):
                return None
            consumed = replace(
                sess,
                refresh_consumed_at=now,
                auth_token_expiry=min(sess.auth_token_expiry, now),
            )
            self.sessions[sess.auth_token] = consumed
            self._persist_state()
            return replace(consumed)

    def revoke_session(self, auth_token: str) -> bool:
        with self._data_lock:
            removed = self._drop_sessions(lambda s: s.auth_token == auth_token)
            if removed:
                self._persist_state()
            return bool(removed)

    def revoke_user_sessions(self, user_id: int) -> int:
        with self._data_lock:
            removed = self._drop_sessions(lambda s: s.user_id == user_id)
            if removed:
                self._persist_state()
            return removed

    def purge_sessions(self, now: int) -> int:
        with self._data_lock:
            removed = self._drop_sessions(
                lambda s: max(s.auth_token_expiry, s.refresh_token_expiry) <= now
            )
            if removed:
                self._persist_state()
            return removed

    # signin history
    def append_signin_event(self, event: SigninEvent) -> SigninEvent:
        with self._data_lock:
            stored = replace(event, id=self._event_seq)
            self._event_seq += 1
            self.signin_events.append(stored)
            self._persist_state()
            return replace(stored)

    def list_signin_events(
        self, user_id: int, since: int, limit: int
    ) -> List[SigninEvent]:
        with self._data_lock:
            matches = [
                e
                for e in self.signin_events
                if e.user_id == user_id and e.activity.time >= since
            ]
        matches.sort(key=lambda e: (e.activity.time, e.id), reverse=True)
        return [replace(e) for e in matches[: max(limit, 0)]]

    def purge_signin_events(self, before: int) -> int:
        with self._data_lock:
            kept = [e for e in self.signin_events if e.activity.time >= before]
            removed = len(self.signin_events) - len(kept)
            if removed:
                self.signin_events = kept
                self._persist_state()
            return removed

    # email verification
    def create_email_verification(
        self, verification: EmailVerification
    ) -> EmailVerification:
        with self._data_lock:
            if verification.code in self.email_verifications:
                raise ConstraintViolation("code already exists", {"field": "code"})
            email = normalize_email(verification.email)
            # one pending code per address
            for code, pending in list(self.email_verifications.items()):
                if pending.email == email:
                    self.email_verifications.pop(code, None)
            stored = replace(verification, email=email)
            self.email_verifications[stored.code] = stored
            self._persist_state()
            return replace(stored)

    def consume_email_verification(
        self, code: str, now: int
    ) -> Optional[EmailVerification]:
        with self._data_lock:
            pending = self.email_verifications.pop(code, None)
            if pending is None:
                return None
            self._persist_state()
            if pending.expires_at <= now:
                return None
            return pending

    def purge_email_verifications(self, now: int) -> int:
        with self._data_lock:
            stale = [
                code
                for code, pending in self.email_verifications.items()
                if pending.expires_at <= now
            ]
            for code in stale:
                self.email_verifications.pop(code, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "signin_events": [
                self._serialize_signin_event(e) for e in self.signin_events
            ],
            "email_verifications": [
                {"code": v.code, "email": v.email, "expires_at": v.expires_at}
                for v in self.email_verifications.values()
            ],
            "user_seq": self._user_seq,
            "event_seq": self._event_seq,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {}
        self._refresh_index = {}
        for raw in data.get("sessions", []):
            sess = self._deserialize_session(raw)
            self.sessions[sess.auth_token] = sess
            self._refresh_index[sess.refresh_token] = sess.auth_token
        self.signin_events = [
            self._deserialize_signin_event(e) for e in data.get("signin_events", [])
        ]
        self.email_verifications = {
            v["code"]: EmailVerification(
                code=v["code"], email=v["email"], expires_at=int(v["expires_at"])
            )
            for v in data.get("email_verifications", [])
        }
        self._user_seq = max(
            int(data.get("user_seq", 1)), max(self.users, default=0) + 1
        )
        self._event_seq = max(
            int(data.get("event_seq", 1)),
            max((e.id for e in self.signin_events), default=0) + 1,
        )
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            signin_events=len(self.signin_events),
        )
        return True

    @staticmethod
    def _serialize_activity(activity: Activity) -> dict:
        return {"time": activity.time, "ip": activity.ip, "device": activity.device}

    @staticmethod
    def _deserialize_activity(data: Optional[dict]) -> Activity:
        data = data or {}
        return Activity(
            time=int(data.get("time", 0)),
            ip=data.get("ip", ""),
            device=data.get("device", ""),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "name_to_use": user.name_to_use,
            "is_active": user.is_active,
            "roles": int(user.roles),
            "password_hash": user.password_hash,
            "authorized_provider": int(user.authorized_provider),
            "created_at": user.created_at,
            "updated_at": user.updated_at,
            "active_at": user.active_at,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            email=data["email"],
            full_name=data.get("full_name", ""),
            name_to_use=data.get("name_to_use", ""),
            is_active=data.get("is_active", True),
            roles=Role(data.get("roles", 0)),
            password_hash=data.get("password_hash"),
            authorized_provider=Provider(data.get("authorized_provider", 1)),
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
            active_at=int(data.get("active_at", 0)),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "auth_token": session.auth_token,
            "auth_token_expiry": session.auth_token_expiry,
            "refresh_token": session.refresh_token,
            "refresh_token_expiry": session.refresh_token_expiry,
            "user_id": session.user_id,
            "provider": int(session.provider),
            "activity": self._serialize_activity(session.activity),
            "refresh_consumed_at": session.refresh_consumed_at,
            "created_at": session.created_at,
        }

    def _deserialize_session(self, data: dict) -> Session:
        consumed = data.get("refresh_consumed_at")
        return Session(
            auth_token=data["auth_token"],
            auth_token_expiry=int(data["auth_token_expiry"]),
            refresh_token=data["refresh_token"],
            refresh_token_expiry=int(data["refresh_token_expiry"]),
            user_id=int(data["user_id"]),
            provider=Provider(data.get("provider", 1)),
            activity=self._deserialize_activity(data.get("activity")),
            refresh_consumed_at=int(consumed) if consumed is not None else None,
            created_at=int(data.get("created_at", 0)),
        )

    def _serialize_signin_event(self, event: SigninEvent) -> dict:
        return {
            "id": event.id,
            "user_id": event.user_id,
            "activity": self._serialize_activity(event.activity),
            "outcome": event.outcome.value,
            "provider": int(event.provider),
            "reason": event.reason,
        }

    def _deserialize_signin_event(self, data: dict) -> SigninEvent:
        return SigninEvent(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            activity=self._deserialize_activity(data.get("activity")),
            outcome=SigninOutcome(data.get("outcome", SigninOutcome.SUCCESS.value)),
            provider=Provider(data.get("provider", 1)),
            reason=data.get("reason"),
        )
