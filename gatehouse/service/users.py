from __future__ import annotations

from dataclasses import replace
from typing import AsyncIterator, Iterable, List, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service import authz
from gatehouse.service.credentials import CredentialVerifier
from gatehouse.service.errors import (
    ConflictError,
    DuplicateEmailError,
    InvalidVerifyCodeError,
    ServiceError,
    StoreError,
    UnauthorizedError,
    ValidationError,
)
from gatehouse.service.ledger import SigninLedger
from gatehouse.service.store import AuthStore, call_store
from gatehouse.service.tokens import TokenIssuer
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    UPDATABLE_FIELDS,
    Activity,
    AuthUser,
    Provider,
    Role,
    Session,
    SigninOutcome,
    User,
    normalize_email,
    now_ts,
)

logger = get_logger(__name__)

_PAGE_SIZE = 100


def auth_user_for(
    user: User, session: Session, provider: Provider, activity: Activity
) -> AuthUser:
    return AuthUser(
        id=user.id,
        provider=Provider(provider),
        email=user.email,
        full_name=user.full_name,
        name_to_use=user.name_to_use,
        roles=user.roles,
        auth_token=session.auth_token,
        auth_token_expiry=session.auth_token_expiry,
        refresh_token=session.refresh_token,
        refresh_token_expiry=session.refresh_token_expiry,
        this_signin=activity,
    )


class UserService:
    """Gate-checked user lifecycle.

    Requests run authorize -> validate -> persist in that order, so a caller
    never learns validation details about a record it may not touch.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        verifier: CredentialVerifier,
        tokens: TokenIssuer,
        ledger: SigninLedger,
    ) -> None:
        self.store = store
        self.settings = settings
        self.verifier = verifier
        self.tokens = tokens
        self.ledger = ledger

    async def _store(self, timeout: Optional[float], fn, *args):
        return await call_store(timeout or self.settings.store_timeout_seconds, fn, *args)

    def _validate(self, user: User, password: Optional[str], *, password_set: bool) -> None:
        if not user.email:
            raise ValidationError("email field may not be blank", field="email")
        if "@" not in user.email:
            raise ValidationError("email address is not valid", field="email")
        if not user.full_name.strip():
            raise ValidationError("full name field may not be blank", field="full_name")
        if not user.name_to_use.strip():
            raise ValidationError(
                "name to use field may not be blank", field="name_to_use"
            )
        if int(user.roles) & ~int(Role.ADMIN | Role.SUPER):
            raise ValidationError("roles holds an unknown role", field="roles")
        provider_mask = int(Provider.EMAIL | Provider.GOOGLE | Provider.FACEBOOK)
        if int(user.authorized_provider) & ~provider_mask:
            raise ValidationError(
                "authorized provider holds an unknown provider", field="authorized_provider"
            )
        if not Provider(user.authorized_provider):
            raise ValidationError(
                "at least one provider must be authorized", field="authorized_provider"
            )
        if password_set and len(password or "") < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters",
                field="password",
            )

    async def _violation_error(
        self, exc: ConstraintViolation, email: str, timeout: Optional[float]
    ) -> ServiceError:
        if exc.detail.get("field") == "email":
            # confirm once so only a real duplicate surfaces as DuplicateEmail
            existing = await self._store(timeout, self.store.get_user_by_email, email)
            if existing is not None:
                return DuplicateEmailError()
        logger.error("user_store_constraint_violation", error=exc.message, detail=exc.detail)
        return StoreError()

    async def create_user(
        self,
        actor: AuthUser,
        draft: User,
        password: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> User:
        if not authz.can_create(actor, draft):
            raise UnauthorizedError()

        now = now_ts()
        candidate = replace(
            draft,
            id=0,
            email=normalize_email(actor.email if actor.is_new_user else draft.email),
            full_name=draft.full_name.strip(),
            name_to_use=draft.name_to_use.strip(),
            roles=authz.creation_roles(actor, draft),
            authorized_provider=(
                actor.provider if actor.is_new_user else draft.authorized_provider
            ),
            password_hash=None,
            created_at=now,
            updated_at=now,
            active_at=0,
        )
        self._validate(candidate, password, password_set=password is not None)
        if password is not None:
            candidate.password_hash = self.verifier.hash_password(password)

        try:
            user = await self._store(timeout, self.store.create_user, candidate)
        except ConstraintViolation as exc:
            raise await self._violation_error(exc, candidate.email, timeout) from exc
        logger.info(
            "user_created",
            user_id=user.id,
            roles=int(user.roles),
            creator_id=actor.id,
            via_new_user=actor.is_new_user,
        )
        return user

    async def signup(
        self,
        actor: AuthUser,
        draft: User,
        password: Optional[str],
        activity: Activity,
        *,
        timeout: Optional[float] = None,
    ) -> AuthUser:
        """Create the user a new-user privilege allows and sign them in."""
        if not actor.is_new_user:
            raise UnauthorizedError()
        user = await self.create_user(actor, draft, password, timeout=timeout)
        session = await self.tokens.issue_session(
            user, actor.provider, activity, timeout=timeout
        )
        await self._store(timeout, self.store.touch_user, user.id, activity.time or now_ts())
        await self.ledger.append(
            user.id, activity, SigninOutcome.SUCCESS, actor.provider, "signup"
        )
        return auth_user_for(user, session, actor.provider, activity)

    async def update_user(
        self,
        actor: AuthUser,
        proposed: User,
        fields: Iterable[str],
        password: Optional[str] = None,
        *,
        verify_code: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> User:
        """Write ``fields`` of ``proposed`` onto the stored record.

        Naming ``password`` sets the new password. Changing one's own email
        needs a verification code issued for the new address.
        """
        requested = frozenset(fields)
        current = await self._store(timeout, self.store.get_user, proposed.id)
        if current is None:
            raise UnauthorizedError()
        if not authz.can_update(actor, current, proposed, requested):
            raise UnauthorizedError()

        unknown = requested - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"unknown field: {sorted(unknown)[0]}", field=sorted(unknown)[0]
            )
        changes = {name: getattr(proposed, name) for name in requested - {"password"}}
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        if "roles" in changes:
            changes["roles"] = Role(changes["roles"])
        if "authorized_provider" in changes:
            changes["authorized_provider"] = Provider(changes["authorized_provider"])
        for name in ("full_name", "name_to_use"):
            if name in changes:
                changes[name] = changes[name].strip()
        merged = replace(current, **changes)
        self._validate(merged, password, password_set="password" in requested)

        email_changed = "email" in changes and changes["email"] != current.email
        if email_changed:
            # checked before a verify code is spent on an address already taken
            holder = await self._store(timeout, self.store.get_user_by_email, changes["email"])
            if holder is not None and holder.id != current.id:
                raise DuplicateEmailError()
        if email_changed and actor.id == current.id:
            verification = None
            if verify_code:
                verification = await self._store(
                    timeout, self.store.consume_email_verification, verify_code, now_ts()
                )
            if verification is None or verification.email != changes["email"]:
                raise InvalidVerifyCodeError()
        if "password" in requested:
            changes["password_hash"] = self.verifier.hash_password(password)

        try:
            updated = await self._store(timeout, self.store.update_user, current.id, changes)
        except ConstraintViolation as exc:
            raise await self._violation_error(exc, changes.get("email", ""), timeout) from exc
        if updated is None:
            raise UnauthorizedError()

        revoke = (
            updated.roles != current.roles
            or (current.is_active and not updated.is_active)
            or "password" in requested
        )
        if revoke:
            revoked = await self._store(timeout, self.store.revoke_user_sessions, updated.id)
            logger.info("user_sessions_revoked", user_id=updated.id, revoked=revoked)
        logger.info(
            "user_updated",
            user_id=updated.id,
            actor_id=actor.id,
            fields=sorted(requested),
        )
        return updated

    async def delete_user(
        self, actor: AuthUser, user_id: int, *, timeout: Optional[float] = None
    ) -> bool:
        target = await self._store(timeout, self.store.get_user, user_id)
        if target is None or not authz.can_delete(actor, target):
            raise UnauthorizedError()
        deleted = await self._store(timeout, self.store.delete_user, user_id)
        logger.info("user_deleted", user_id=user_id, actor_id=actor.id, deleted=deleted)
        return deleted

    async def read_user(
        self, user_id: int, *, timeout: Optional[float] = None
    ) -> Optional[User]:
        return await self._store(timeout, self.store.get_user, user_id)

    async def read_users(
        self, ids: Iterable[int], *, timeout: Optional[float] = None
    ) -> AsyncIterator[User]:
        """Lazily yield the users among ``ids`` that exist, ordered by id."""
        wanted = sorted(set(ids))
        for offset in range(0, len(wanted), _PAGE_SIZE):
            page = await self._store(
                timeout, self.store.get_users, wanted[offset : offset + _PAGE_SIZE]
            )
            for user in page:
                yield user

    async def iter_users(
        self,
        start: int = 1,
        n: Optional[int] = None,
        *,
        page_size: int = _PAGE_SIZE,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[User]:
        """Lazily yield up to ``n`` users with ``id >= start`` in id order.

        Finite; call again to restart.
        """
        remaining = n
        next_id = start
        while remaining is None or remaining > 0:
            limit = page_size if remaining is None else min(page_size, remaining)
            page: List[User] = await self._store(
                timeout, self.store.list_users, next_id, limit
            )
            for user in page:
                yield user
            if remaining is not None:
                remaining -= len(page)
            if len(page) < limit:
                return
            next_id = page[-1].id + 1

    async def bootstrap_superuser(
        self,
        email: str,
        full_name: str,
        name_to_use: str,
        password: str,
        *,
        timeout: Optional[float] = None,
    ) -> User:
        """Create account 1 with SUPER. Only valid on an empty store."""
        now = now_ts()
        candidate = User(
            id=0,
            email=normalize_email(email),
            full_name=(full_name or "").strip(),
            name_to_use=(name_to_use or "").strip(),
            is_active=True,
            roles=Role.SUPER,
            authorized_provider=Provider.EMAIL,
            created_at=now,
            updated_at=now,
        )
        self._validate(candidate, password, password_set=True)
        if await self._store(timeout, self.store.count_users):
            raise ConflictError("store already has users")
        # the store still refuses a second first user if one slips in meanwhile
        candidate.password_hash = self.verifier.hash_password(password)
        try:
            user = await self._store(timeout, self.store.create_first_user, candidate)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "id":
                raise ConflictError("store already has users") from exc
            raise await self._violation_error(exc, candidate.email, timeout) from exc
        logger.info("superuser_bootstrapped", user_id=user.id)
        return user
