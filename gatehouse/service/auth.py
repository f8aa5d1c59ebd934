from __future__ import annotations

import secrets
from typing import List, Optional, Union

import httpx

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service import authz
from gatehouse.service.credentials import CredentialVerifier, ExternalIdentity
from gatehouse.service.errors import (
    DuplicateEmailError,
    InvalidAuthTokenError,
    InvalidProviderTokenError,
    InvalidVerifyCodeError,
    RateLimitedError,
    StoreError,
    UnauthorizedError,
    ValidationError,
)
from gatehouse.service.ledger import SigninLedger
from gatehouse.service.providers import ProviderRegistry
from gatehouse.service.store import AuthStore, call_store
from gatehouse.service.tokens import TokenIssuer
from gatehouse.service.users import auth_user_for
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    Activity,
    AuthUser,
    EmailVerification,
    Provider,
    SigninEvent,
    SigninOutcome,
    User,
    normalize_email,
    now_ts,
)
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_RATE_WINDOW_SECONDS = 60


class AuthService:
    """Sign-in, session verification and the new-user privilege."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        *,
        registry: Optional[ProviderRegistry] = None,
        ledger: Optional[SigninLedger] = None,
        verifier: Optional[CredentialVerifier] = None,
        tokens: Optional[TokenIssuer] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.registry = registry or ProviderRegistry.from_settings(settings)
        self.ledger = ledger or SigninLedger(store, settings)
        self.verifier = verifier or CredentialVerifier(
            store,
            self.registry,
            settings,
            ledger=self.ledger,
            http_client=http_client,
        )
        self.tokens = tokens or TokenIssuer(store, settings, self.ledger, cache=cache)

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout or self.settings.store_timeout_seconds

    async def _check_signin_rate(self, email: str) -> None:
        if not self.cache:
            return
        try:
            allowed = await self.cache.check_rate_limit(
                f"signin:{email}",
                self.settings.signin_rate_limit_per_minute,
                _RATE_WINDOW_SECONDS,
            )
        except Exception as exc:
            logger.warning("signin_rate_limit_check_failed", error=str(exc))
            return
        if not allowed:
            logger.warning("signin_rate_limited", email=email)
            raise RateLimitedError()

    async def _complete_signin(
        self,
        user: User,
        provider: Provider,
        activity: Activity,
        timeout: Optional[float],
    ) -> AuthUser:
        session = await self.tokens.issue_session(
            user, provider, activity, timeout=timeout
        )
        await call_store(
            self._timeout(timeout),
            self.store.touch_user,
            user.id,
            activity.time or now_ts(),
        )
        await self.ledger.append(user.id, activity, SigninOutcome.SUCCESS, provider)
        logger.info("signin_succeeded", user_id=user.id, provider=provider.name.lower())
        return auth_user_for(user, session, provider, activity)

    # sign-in
    async def signin_email(
        self,
        email: str,
        password: str,
        activity: Activity,
        *,
        timeout: Optional[float] = None,
    ) -> AuthUser:
        normalized = normalize_email(email)
        await self._check_signin_rate(normalized)
        user = await self.verifier.verify_password(
            normalized, password, activity=activity, timeout=timeout
        )
        return await self._complete_signin(user, Provider.EMAIL, activity, timeout)

    async def signin_oauth(
        self,
        provider: Provider,
        token: str,
        activity: Activity,
        *,
        timeout: Optional[float] = None,
    ) -> AuthUser:
        provider = Provider(provider)
        identity = await self.verifier.verify_provider_token(provider, token)
        user = await call_store(
            self._timeout(timeout), self.store.get_user_by_email, identity.email
        )
        if user is None:
            logger.info("oauth_signin_unknown_user", provider=provider.name.lower())
            raise InvalidProviderTokenError()
        if not user.is_active or not user.authorized_provider & provider:
            await self.ledger.append(
                user.id,
                activity,
                SigninOutcome.FAILED,
                provider,
                "inactive" if not user.is_active else "provider_not_allowed",
            )
            raise InvalidProviderTokenError()
        return await self._complete_signin(user, provider, activity, timeout)

    async def signin_refresh(
        self,
        refresh_token: str,
        activity: Activity,
        *,
        timeout: Optional[float] = None,
    ) -> AuthUser:
        rotation = await self.tokens.rotate_on_refresh(
            refresh_token, activity, timeout=timeout
        )
        user, session = rotation.user, rotation.session
        await call_store(
            self._timeout(timeout),
            self.store.touch_user,
            user.id,
            activity.time or now_ts(),
        )
        await self.ledger.append(
            user.id, activity, SigninOutcome.SUCCESS, session.provider, "refresh"
        )
        return auth_user_for(user, session, session.provider, activity)

    # sessions
    async def verify_session(
        self,
        auth_token: str,
        activity: Activity,
        *,
        timeout: Optional[float] = None,
    ) -> AuthUser:
        """Resolve an auth token to its user and slide its idle expiry.

        A device differing from the one recorded at issuance or last rotation
        kills the whole session (auth and refresh token) and fails exactly
        like an expired token.
        """
        if not auth_token:
            raise InvalidAuthTokenError()
        now = now_ts()
        session = await call_store(
            self._timeout(timeout), self.store.get_session, auth_token
        )
        if session is None or session.auth_token_expiry <= now:
            raise InvalidAuthTokenError()

        if session.activity.device != activity.device:
            await call_store(
                self._timeout(timeout), self.store.revoke_session, auth_token
            )
            await self.ledger.append(
                session.user_id,
                activity,
                SigninOutcome.FLAGGED,
                session.provider,
                "device_mismatch",
            )
            raise InvalidAuthTokenError()

        extended = await call_store(
            self._timeout(timeout),
            self.store.extend_session,
            auth_token,
            now,
            now + self.tokens.auth_idle_seconds,
        )
        if extended is None:
            raise InvalidAuthTokenError()
        user = await call_store(
            self._timeout(timeout), self.store.get_user, extended.user_id
        )
        if user is None or not user.is_active:
            raise InvalidAuthTokenError()
        return auth_user_for(user, extended, extended.provider, activity)

    async def signout(
        self, auth_token: str, *, timeout: Optional[float] = None
    ) -> bool:
        revoked = await call_store(
            self._timeout(timeout), self.store.revoke_session, auth_token
        )
        logger.info("signout", revoked=revoked)
        return revoked

    async def signout_everywhere(
        self, actor: AuthUser, *, timeout: Optional[float] = None
    ) -> int:
        if actor.is_new_user:
            raise UnauthorizedError()
        revoked = await call_store(
            self._timeout(timeout), self.store.revoke_user_sessions, actor.id
        )
        logger.info("signout_everywhere", user_id=actor.id, revoked=revoked)
        return revoked

    # new users
    async def get_email_verify_code(
        self, email: str, *, timeout: Optional[float] = None
    ) -> str:
        """Start the new-user flow for ``email``. Delivering the code is the
        caller's job."""
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("email address is not valid", field="email")
        expires_at = now_ts() + self.settings.email_verification_max_age_hours * 3600
        for attempt in range(2):
            code = secrets.token_urlsafe(24)
            try:
                await call_store(
                    self._timeout(timeout),
                    self.store.create_email_verification,
                    EmailVerification(code=code, email=normalized, expires_at=expires_at),
                )
            except ConstraintViolation as exc:
                if attempt == 0 and exc.detail.get("field") == "code":
                    continue
                raise StoreError() from exc
            return code
        raise StoreError()

    async def _new_user(
        self,
        identity: ExternalIdentity,
        provider: Provider,
        activity: Activity,
        timeout: Optional[float],
    ) -> AuthUser:
        existing = await call_store(
            self._timeout(timeout), self.store.get_user_by_email, identity.email
        )
        if existing is not None:
            raise DuplicateEmailError()
        logger.info("new_user_privilege_granted", provider=provider.name.lower())
        return AuthUser(
            id=0,
            provider=provider,
            email=identity.email,
            is_new_user=True,
            this_signin=activity,
        )

    async def new_user_email(
        self, verify_code: str, activity: Activity, *, timeout: Optional[float] = None
    ) -> AuthUser:
        if not verify_code:
            raise InvalidVerifyCodeError()
        verification = await call_store(
            self._timeout(timeout),
            self.store.consume_email_verification,
            verify_code,
            now_ts(),
        )
        if verification is None:
            raise InvalidVerifyCodeError()
        identity = ExternalIdentity(email=verification.email, external_id="")
        return await self._new_user(identity, Provider.EMAIL, activity, timeout)

    async def new_user_oauth(
        self,
        provider: Provider,
        token: str,
        activity: Activity,
        *,
        timeout: Optional[float] = None,
    ) -> AuthUser:
        provider = Provider(provider)
        identity = await self.verifier.verify_provider_token(provider, token)
        return await self._new_user(identity, provider, activity, timeout)

    # history
    async def recent_signins(
        self,
        actor: AuthUser,
        user_id: int,
        n: int,
        *,
        timeout: Optional[float] = None,
    ) -> List[SigninEvent]:
        target = await call_store(self._timeout(timeout), self.store.get_user, user_id)
        if target is None or not authz.can_view_history(actor, target):
            raise UnauthorizedError()
        return await self.ledger.recent(user_id, n, timeout=timeout)

    async def purge_expired(self, now: Optional[int] = None) -> dict:
        """One retention sweep: sign-in history, dead sessions, stale codes."""
        now = now if now is not None else now_ts()
        events = await self.ledger.purge(now)
        sessions = await call_store(
            self.settings.store_timeout_seconds, self.store.purge_sessions, now
        )
        codes = await call_store(
            self.settings.store_timeout_seconds,
            self.store.purge_email_verifications,
            now,
        )
        logger.info(
            "retention_sweep_finished",
            signin_events=events,
            sessions=sessions,
            email_verifications=codes,
        )
        return {"signin_events": events, "sessions": sessions, "email_verifications": codes}
