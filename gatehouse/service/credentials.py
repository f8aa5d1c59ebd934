from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    InvalidCredentialsError,
    InvalidProviderTokenError,
    ProviderNotConfiguredError,
)
from gatehouse.service.ledger import SigninLedger
from gatehouse.service.providers import ProviderConfig, ProviderRegistry
from gatehouse.service.store import AuthStore, call_store
from gatehouse.storage.models import (
    Activity,
    Provider,
    SigninOutcome,
    User,
    normalize_email,
    now_ts,
)

logger = get_logger(__name__)

_GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


@dataclass(frozen=True)
class ExternalIdentity:
    email: str
    external_id: str


TokenVerifier = Callable[
    [httpx.AsyncClient, ProviderConfig, str], Awaitable[ExternalIdentity]
]


def _json_object(response: httpx.Response) -> dict:
    if response.status_code != 200:
        raise InvalidProviderTokenError()
    data = response.json()
    if not isinstance(data, dict):
        raise InvalidProviderTokenError()
    return data


async def verify_google_id_token(
    client: httpx.AsyncClient, config: ProviderConfig, token: str
) -> ExternalIdentity:
    """Check a Google ID token with the tokeninfo endpoint."""
    data = _json_object(await client.get(config.endpoint, params={"id_token": token}))
    if data.get("aud") != config.client_id:
        raise InvalidProviderTokenError()
    if data.get("iss") not in _GOOGLE_ISSUERS:
        raise InvalidProviderTokenError()
    if str(data.get("email_verified", "")).lower() != "true":
        raise InvalidProviderTokenError()
    email, subject = data.get("email"), data.get("sub")
    if not email or not subject:
        raise InvalidProviderTokenError()
    return ExternalIdentity(email=email, external_id=str(subject))


async def verify_facebook_access_token(
    client: httpx.AsyncClient, config: ProviderConfig, token: str
) -> ExternalIdentity:
    """Check a Facebook access token was issued to our app, then read the
    user's id and email from the Graph API."""
    base = config.endpoint.rstrip("/")
    app = _json_object(await client.get(f"{base}/app", params={"access_token": token}))
    if str(app.get("id", "")) != config.client_id:
        raise InvalidProviderTokenError()
    me = _json_object(
        await client.get(
            f"{base}/me", params={"access_token": token, "fields": "id,email"}
        )
    )
    email, subject = me.get("email"), me.get("id")
    if not email or not subject:
        raise InvalidProviderTokenError()
    return ExternalIdentity(email=email, external_id=str(subject))


DEFAULT_VERIFIERS: Dict[Provider, TokenVerifier] = {
    Provider.GOOGLE: verify_google_id_token,
    Provider.FACEBOOK: verify_facebook_access_token,
}


class CredentialVerifier:
    """Password and provider-token checks.

    Every password failure raises the same ``InvalidCredentialsError``; the
    real reason only goes to the log and, for known users, the sign-in ledger.
    """

    def __init__(
        self,
        store: AuthStore,
        registry: ProviderRegistry,
        settings: Settings,
        *,
        ledger: Optional[SigninLedger] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        verifiers: Optional[Dict[Provider, TokenVerifier]] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings
        self.ledger = ledger
        self.http_client = http_client
        self.verifiers = dict(verifiers if verifiers is not None else DEFAULT_VERIFIERS)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against when the email is unknown so timing stays flat
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.check_registry()

    def check_registry(self) -> None:
        """Every registered provider needs a token verifier."""
        for provider in self.registry.registered():
            if provider not in self.verifiers:
                raise ProviderNotConfiguredError(
                    "no token verifier for registered provider",
                    detail={"provider": provider.name},
                )

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _hash_matches(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    async def verify_password(
        self,
        email: str,
        password: str,
        *,
        activity: Optional[Activity] = None,
        timeout: Optional[float] = None,
    ) -> User:
        user = await call_store(
            timeout or self.settings.store_timeout_seconds,
            self.store.get_user_by_email,
            normalize_email(email),
        )
        stored_hash = user.password_hash if user else None
        matched = self._hash_matches(stored_hash or self._dummy_hash, password or "")

        reason = None
        if user is None:
            reason = "unknown_email"
        elif not stored_hash:
            reason = "no_password"
        elif not matched:
            reason = "bad_password"
        elif not user.is_active:
            reason = "inactive"
        elif not user.authorized_provider & Provider.EMAIL:
            reason = "provider_not_allowed"

        if reason is not None:
            logger.info(
                "password_verification_failed",
                reason=reason,
                user_id=user.id if user else None,
            )
            if user is not None and self.ledger is not None:
                await self.ledger.append(
                    user.id,
                    activity or Activity(time=now_ts()),
                    SigninOutcome.FAILED,
                    Provider.EMAIL,
                    reason,
                )
            raise InvalidCredentialsError()
        return user

    async def verify_provider_token(
        self, provider: Provider, token: str
    ) -> ExternalIdentity:
        provider = Provider(provider)
        config = self.registry.require(provider)
        verify = self.verifiers.get(provider)
        if verify is None:
            raise ProviderNotConfiguredError(detail={"provider": provider.name})
        if not token:
            raise InvalidProviderTokenError()
        try:
            if self.http_client is not None:
                identity = await verify(self.http_client, config, token)
            else:
                async with httpx.AsyncClient(
                    timeout=self.settings.provider_http_timeout_seconds,
                    follow_redirects=False,
                ) as client:
                    identity = await verify(client, config, token)
        except httpx.HTTPError as exc:
            logger.warning(
                "provider_verification_http_error",
                provider=provider.name.lower(),
                error=str(exc),
            )
            raise InvalidProviderTokenError() from exc
        except ValueError as exc:
            logger.warning(
                "provider_verification_parse_error",
                provider=provider.name.lower(),
                error=str(exc),
            )
            raise InvalidProviderTokenError() from exc
        return ExternalIdentity(
            email=normalize_email(identity.email), external_id=identity.external_id
        )
