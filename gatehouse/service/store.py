from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

from gatehouse.logging import get_logger
from gatehouse.service.errors import StoreUnavailableError
from gatehouse.storage.errors import StorageUnavailable
from gatehouse.storage.models import EmailVerification, Session, SigninEvent, User

logger = get_logger(__name__)

T = TypeVar("T")


class AuthStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def create_first_user(self, user: User) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def count_users(self) -> int: ...

    def list_users(self, start_id: int, limit: int) -> List[User]: ...

    def get_users(self, ids: Iterable[int]) -> List[User]: ...

    def update_user(self, user_id: int, changes: Dict[str, Any]) -> Optional[User]: ...

    def touch_user(self, user_id: int, active_at: int) -> None: ...

    def delete_user(self, user_id: int) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, auth_token: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def extend_session(
        self, auth_token: str, now: int, new_expiry: int
    ) -> Optional[Session]: ...

    def consume_refresh_token(self, refresh_token: str, now: int) -> Optional[Session]: ...

    def revoke_session(self, auth_token: str) -> bool: ...

    def revoke_user_sessions(self, user_id: int) -> int: ...

    def purge_sessions(self, now: int) -> int: ...

    def append_signin_event(self, event: SigninEvent) -> SigninEvent: ...

    def list_signin_events(
        self, user_id: int, since: int, limit: int
    ) -> List[SigninEvent]: ...

    def purge_signin_events(self, before: int) -> int: ...

    def create_email_verification(
        self, verification: EmailVerification
    ) -> EmailVerification: ...

    def consume_email_verification(
        self, code: str, now: int
    ) -> Optional[EmailVerification]: ...

    def purge_email_verifications(self, now: int) -> int: ...


async def call_store(timeout: float, fn: Callable[..., T], *args: Any) -> T:
    """Run a blocking store call in a worker thread, bounded by ``timeout``.

    A timed-out call may still finish in its thread; the caller only learns
    that the store did not answer in time.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning(
            "store_call_timeout", operation=getattr(fn, "__name__", "?"), timeout=timeout
        )
        raise StoreUnavailableError() from exc
    except StorageUnavailable as exc:
        logger.warning(
            "store_unavailable",
            operation=getattr(fn, "__name__", "?"),
            error=exc.message,
        )
        raise StoreUnavailableError() from exc
