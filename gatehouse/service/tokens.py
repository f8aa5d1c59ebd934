from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional, Union

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    InvalidRefreshTokenError,
    StoreError,
    StoreUnavailableError,
)
from gatehouse.service.ledger import SigninLedger
from gatehouse.service.store import AuthStore, call_store
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    Activity,
    Provider,
    Session,
    SigninOutcome,
    User,
    now_ts,
)
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_TOKEN_BYTES = 32
_TOKEN_FIELDS = ("auth_token", "refresh_token")


def new_token() -> str:
    return secrets.token_urlsafe(_TOKEN_BYTES)


@dataclass(frozen=True)
class Rotation:
    session: Session
    previous: Session
    user: User


class TokenIssuer:
    """Mints sessions and rotates them on refresh.

    Auth tokens slide (max idle); refresh tokens have a fixed lifetime from
    issuance and are single-use.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        ledger: SigninLedger,
        *,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.ledger = ledger
        self.cache = cache

    @property
    def auth_idle_seconds(self) -> int:
        return self.settings.auth_token_max_idle_hours * 3600

    @property
    def refresh_lifetime_seconds(self) -> int:
        return self.settings.refresh_token_max_age_days * 24 * 3600

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout or self.settings.store_timeout_seconds

    async def issue_session(
        self,
        user: User,
        provider: Provider,
        activity: Activity,
        *,
        timeout: Optional[float] = None,
    ) -> Session:
        now = now_ts()
        for attempt in range(2):
            session = Session(
                auth_token=new_token(),
                auth_token_expiry=now + self.auth_idle_seconds,
                refresh_token=new_token(),
                refresh_token_expiry=now + self.refresh_lifetime_seconds,
                user_id=user.id,
                provider=Provider(provider),
                activity=activity,
                created_at=now,
            )
            try:
                return await call_store(
                    self._timeout(timeout), self.store.create_session, session
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") in _TOKEN_FIELDS and attempt == 0:
                    logger.warning("session_token_collision", field=exc.detail["field"])
                    continue
                raise StoreError() from exc
        raise StoreError()

    async def _refresh_marked_consumed(self, refresh_token: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_refresh_consumed(refresh_token)
        except Exception as exc:
            # an unknown answer never lets the token through
            logger.warning("check_consumed_refresh_token_failed", error=str(exc))
            raise StoreUnavailableError() from exc

    async def _mark_refresh_consumed(self, session: Session) -> None:
        if not self.cache:
            return
        ttl = session.refresh_token_expiry - now_ts()
        try:
            await self.cache.mark_refresh_consumed(session.refresh_token, ttl)
        except Exception as exc:
            logger.warning("cache_consumed_refresh_token_failed", error=str(exc))

    async def _flag_replay(
        self, refresh_token: str, activity: Activity, timeout: Optional[float]
    ) -> None:
        existing = await call_store(
            self._timeout(timeout), self.store.get_session_by_refresh_token, refresh_token
        )
        if existing and existing.refresh_consumed_at is not None:
            await self.ledger.append(
                existing.user_id,
                activity,
                SigninOutcome.FLAGGED,
                existing.provider,
                "refresh_replay",
            )

    async def rotate_on_refresh(
        self,
        refresh_token: str,
        activity: Activity,
        *,
        timeout: Optional[float] = None,
    ) -> Rotation:
        """Consume ``refresh_token`` and issue a fresh session for its user.

        Consumption is one conditional store update, so of two concurrent
        refreshes with the same token at most one succeeds.
        """
        if not refresh_token:
            raise InvalidRefreshTokenError()
        if await self._refresh_marked_consumed(refresh_token):
            await self._flag_replay(refresh_token, activity, timeout)
            raise InvalidRefreshTokenError()

        previous = await call_store(
            self._timeout(timeout),
            self.store.consume_refresh_token,
            refresh_token,
            now_ts(),
        )
        if previous is None:
            await self._flag_replay(refresh_token, activity, timeout)
            raise InvalidRefreshTokenError()
        await self._mark_refresh_consumed(previous)

        if previous.activity.device != activity.device:
            # device strings are unreliable; flag but honour the refresh
            await self.ledger.append(
                previous.user_id,
                activity,
                SigninOutcome.FLAGGED,
                previous.provider,
                "device_mismatch",
            )

        user = await call_store(
            self._timeout(timeout), self.store.get_user, previous.user_id
        )
        if user is None or not user.is_active:
            raise InvalidRefreshTokenError()
        session = await self.issue_session(
            user, previous.provider, activity, timeout=timeout
        )
        return Rotation(session=session, previous=previous, user=user)
