from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, StorageUnavailable
from gatehouse.storage.models import (
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

# Constraint name -> field reported in ConstraintViolation.detail
_UNIQUE_FIELDS = {
    "users_pkey": "id",
    "users_email_key": "email",
    "users_signedin_pkey": "auth_token",
    "users_signedin_refresh_token_key": "refresh_token",
    "users_verify_email_pkey": "code",
}

# Columns update_user may write; keys outside this set are ignored.
_USER_COLUMNS = (
    "email",
    "full_name",
    "name_to_use",
    "is_active",
    "roles",
    "password_hash",
    "authorized_provider",
)


def _unique_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    return _UNIQUE_FIELDS.get(constraint, constraint or "unknown")


def _db_value(value: Any) -> Any:
    if isinstance(value, (Role, Provider)):
        return int(value)
    return value


class PostgresStore:
    """Postgres-backed identity store.

    Uniqueness is left to the table constraints and every state transition is
    a single ``UPDATE ... WHERE ... RETURNING`` so concurrent callers race
    safely. Apply ``sql/001_identity.sql`` before starting.
    """

    REQUIRED_TABLES = ("users", "users_signedin", "users_history", "users_verify_email")

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = max(1, int(timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            raise StorageUnavailable("connection pool exhausted") from exc
        except errors.QueryCanceled as exc:
            raise StorageUnavailable("statement timed out") from exc
        except OperationalError as exc:
            raise StorageUnavailable("database unavailable", {"error": str(exc)}) from exc

    def _verify_required_schema(self) -> None:
        """Fail fast when the identity tables are missing."""

        with self._connect() as conn:
            missing = []
            for table in self.REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_identity.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            full_name=row["full_name"],
            name_to_use=row["name_to_use"],
            is_active=row.get("is_active", True),
            roles=Role(row.get("roles") or 0),
            password_hash=row.get("password_hash"),
            authorized_provider=Provider(row.get("authorized_provider") or 0),
            created_at=int(row.get("created_at") or 0),
            updated_at=int(row.get("updated_at") or 0),
            active_at=int(row.get("active_at") or 0),
        )

    @staticmethod
    def _activity_from_row(row: dict) -> Activity:
        return Activity(
            time=int(row.get("signin_time") or 0),
            ip=row.get("signin_ip") or "",
            device=row.get("signin_device") or "",
        )

    def _session_from_row(self, row: dict) -> Session:
        consumed = row.get("refresh_consumed_at")
        return Session(
            auth_token=row["auth_token"],
            auth_token_expiry=int(row["auth_token_expiry"]),
            refresh_token=row["refresh_token"],
            refresh_token_expiry=int(row["refresh_token_expiry"]),
            user_id=int(row["user_id"]),
            provider=Provider(row["provider"]),
            activity=self._activity_from_row(row),
            refresh_consumed_at=int(consumed) if consumed is not None else None,
            created_at=int(row.get("created_at") or 0),
        )

    def _event_from_row(self, row: dict) -> SigninEvent:
        return SigninEvent(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            activity=self._activity_from_row(row),
            outcome=SigninOutcome(row["outcome"]),
            provider=Provider(row["provider"]),
            reason=row.get("reason"),
        )

    # users
    @staticmethod
    def _user_params(user: User) -> tuple:
        now = now_ts()
        created_at = user.created_at or now
        return (
            normalize_email(user.email),
            user.full_name,
            user.name_to_use,
            user.is_active,
            int(user.roles),
            user.password_hash,
            int(user.authorized_provider),
            created_at,
            user.updated_at or created_at,
            user.active_at,
        )

    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (email, full_name, name_to_use, is_active, roles, password_hash,
                                       authorized_provider, created_at, updated_at, active_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    self._user_params(user),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email already exists", {"field": _unique_field(exc)}
            ) from exc
        return self._user_from_row(row)

    def create_first_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, full_name, name_to_use, is_active, roles, password_hash,
                                       authorized_provider, created_at, updated_at, active_at)
                    SELECT 1, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
                    WHERE NOT EXISTS (SELECT 1 FROM users)
                    RETURNING *
                    """,
                    self._user_params(user),
                ).fetchone()
                if row:
                    conn.execute(
                        "SELECT setval(pg_get_serial_sequence('users', 'id'), "
                        "(SELECT MAX(id) FROM users))"
                    )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "store already has users", {"field": _unique_field(exc)}
            ) from exc
        if not row:
            raise ConstraintViolation("store already has users", {"field": "id"})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM users").fetchone()
        return int(row["n"]) if row else 0

    def list_users(self, start_id: int, limit: int) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE id >= %s ORDER BY id LIMIT %s",
                (start_id, max(limit, 0)),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def get_users(self, ids: Iterable[int]) -> List[User]:
        wanted = sorted(set(ids))
        if not wanted:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE id = ANY(%s) ORDER BY id", (wanted,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user(self, user_id: int, changes: Dict[str, Any]) -> Optional[User]:
        columns = [col for col in _USER_COLUMNS if col in changes]
        values = []
        for col in columns:
            value = changes[col]
            if col == "email":
                value = normalize_email(value)
            values.append(_db_value(value))
        assignments = ", ".join(f"{col} = %s" for col in columns + ["updated_at"])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE users SET {assignments} WHERE id = %s RETURNING *",
                    (*values, now_ts(), user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email already exists", {"field": _unique_field(exc)}
            ) from exc
        return self._user_from_row(row) if row else None

    def touch_user(self, user_id: int, active_at: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET active_at = %s WHERE id = %s", (active_at, user_id)
            )

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users_signedin (auth_token, auth_token_expiry, refresh_token, refresh_token_expiry,
                                                user_id, provider, signin_time, signin_ip, signin_device,
                                                refresh_consumed_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.auth_token,
                        session.auth_token_expiry,
                        session.refresh_token,
                        session.refresh_token_expiry,
                        session.user_id,
                        int(session.provider),
                        session.activity.time,
                        session.activity.ip,
                        session.activity.device,
                        session.refresh_consumed_at,
                        session.created_at or now_ts(),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "token already exists", {"field": _unique_field(exc)}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist", {"user_id": session.user_id}
            ) from exc
        return self._session_from_row(row)

    def get_session(self, auth_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users_signedin WHERE auth_token = %s", (auth_token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users_signedin WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def extend_session(
        self, auth_token: str, now: int, new_expiry: int
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users_signedin
                SET auth_token_expiry = GREATEST(auth_token_expiry, %s)
                WHERE auth_token = %s AND auth_token_expiry > %s
                RETURNING *
                """,
                (new_expiry, auth_token, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def consume_refresh_token(self, refresh_token: str, now: int) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users_signedin
                SET refresh_consumed_at = %s,
                    auth_token_expiry = LEAST(auth_token_expiry, %s)
                WHERE refresh_token = %s
                  AND refresh_consumed_at IS NULL
                  AND refresh_token_expiry > %s
                RETURNING *
                """,
                (now, now, refresh_token, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, auth_token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM users_signedin WHERE auth_token = %s", (auth_token,)
            )
            return result.rowcount > 0

    def revoke_user_sessions(self, user_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM users_signedin WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def purge_sessions(self, now: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM users_signedin WHERE GREATEST(auth_token_expiry, refresh_token_expiry) <= %s",
                (now,),
            )
            return result.rowcount

    # signin history
    def append_signin_event(self, event: SigninEvent) -> SigninEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO users_history (user_id, signin_time, signin_ip, signin_device, outcome, provider, reason)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    event.user_id,
                    event.activity.time,
                    event.activity.ip,
                    event.activity.device,
                    event.outcome.value,
                    int(event.provider),
                    event.reason,
                ),
            ).fetchone()
        return self._event_from_row(row)

    def list_signin_events(
        self, user_id: int, since: int, limit: int
    ) -> List[SigninEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM users_history
                WHERE user_id = %s AND signin_time >= %s
                ORDER BY signin_time DESC, id DESC
                LIMIT %s
                """,
                (user_id, since, max(limit, 0)),
            ).fetchall()
        return [self._event_from_row(row) for row in rows]

    def purge_signin_events(self, before: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM users_history WHERE signin_time < %s", (before,)
            )
            return result.rowcount

    # email verification
    def create_email_verification(
        self, verification: EmailVerification
    ) -> EmailVerification:
        email = normalize_email(verification.email)
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM users_verify_email WHERE email = %s", (email,))
                conn.execute(
                    "INSERT INTO users_verify_email (code, email, expires_at) VALUES (%s, %s, %s)",
                    (verification.code, email, verification.expires_at),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "code already exists", {"field": _unique_field(exc)}
            ) from exc
        return EmailVerification(
            code=verification.code, email=email, expires_at=verification.expires_at
        )

    def consume_email_verification(
        self, code: str, now: int
    ) -> Optional[EmailVerification]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM users_verify_email WHERE code = %s RETURNING *", (code,)
            ).fetchone()
        if not row or int(row["expires_at"]) <= now:
            return None
        return EmailVerification(
            code=row["code"], email=row["email"], expires_at=int(row["expires_at"])
        )

    def purge_email_verifications(self, now: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM users_verify_email WHERE expires_at <= %s", (now,)
            )
            return result.rowcount
