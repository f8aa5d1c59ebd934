"""Service-level tests for sign-in, sessions, new users and sign-in history."""

import asyncio
import time
from dataclasses import replace

import pytest

from gatehouse.config import Settings
from gatehouse.service.auth import AuthService
from gatehouse.service.errors import (
    ConflictError,
    DuplicateEmailError,
    InvalidAuthTokenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidVerifyCodeError,
    RateLimitedError,
    StoreUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from gatehouse.service.users import UserService
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.models import (
    Activity,
    AuthUser,
    Provider,
    Role,
    SigninOutcome,
    User,
    now_ts,
)

PASSWORD = "correct-horse-9"
DAY = 24 * 60 * 60


@pytest.fixture
def settings():
    return Settings(store_timeout_seconds=5.0)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(memory_store, None, settings)


@pytest.fixture
def user_service(memory_store, settings, auth_service):
    return UserService(
        memory_store,
        settings,
        verifier=auth_service.verifier,
        tokens=auth_service.tokens,
        ledger=auth_service.ledger,
    )


def _activity(device="Firefox on Linux", ip="10.0.0.1"):
    return Activity(time=now_ts(), ip=ip, device=device)


def _seed(store, auth_service, email, password=PASSWORD, roles=Role.NONE, **kwargs):
    return store.create_user(
        User(
            id=0,
            email=email,
            full_name="Seeded User",
            name_to_use="Seeded",
            roles=roles,
            password_hash=auth_service.verifier.hash_password(password),
            **kwargs,
        )
    )


def _draft(email, roles=Role.NONE):
    return User(id=0, email=email, full_name="Draft User", name_to_use="Draft", roles=roles)


class TestPasswordSignin:
    async def test_signin_returns_tokens_and_records_success(
        self, memory_store, auth_service
    ):
        user = _seed(memory_store, auth_service, "alice@example.com")

        auth_user = await auth_service.signin_email(
            " alice@example.com ", PASSWORD, _activity()
        )

        assert auth_user.id == user.id
        assert auth_user.auth_token and auth_user.refresh_token
        assert auth_user.auth_token != auth_user.refresh_token
        assert auth_user.refresh_token_expiry > auth_user.auth_token_expiry
        assert memory_store.get_user(user.id).active_at > 0
        [event] = memory_store.list_signin_events(user.id, 0, 10)
        assert event.outcome is SigninOutcome.SUCCESS

    async def test_any_single_character_change_fails(self, memory_store, auth_service):
        _seed(memory_store, auth_service, "bob@example.com")

        for i, char in enumerate(PASSWORD):
            mutated = PASSWORD[:i] + chr(ord(char) + 1) + PASSWORD[i + 1 :]
            with pytest.raises(InvalidCredentialsError):
                await auth_service.signin_email("bob@example.com", mutated, _activity())

        email = "bob@example.com"
        for i, char in enumerate(email):
            mutated = email[:i] + chr(ord(char) + 1) + email[i + 1 :]
            with pytest.raises(InvalidCredentialsError):
                await auth_service.signin_email(mutated, PASSWORD, _activity())

        assert await auth_service.signin_email(email, PASSWORD, _activity())

    async def test_email_case_is_significant(self, memory_store, auth_service):
        _seed(memory_store, auth_service, "a@x.com")

        with pytest.raises(InvalidCredentialsError):
            await auth_service.signin_email("A@x.com", PASSWORD, _activity())
        with pytest.raises(InvalidCredentialsError):
            await auth_service.signin_email("a@X.com", PASSWORD, _activity())
        assert await auth_service.signin_email(" a@x.com ", PASSWORD, _activity())

    async def test_failure_reasons_are_indistinguishable(
        self, memory_store, auth_service
    ):
        _seed(memory_store, auth_service, "inactive@example.com", is_active=False)
        _seed(memory_store, auth_service, "known@example.com")

        errors = []
        for email, password in (
            ("nobody@example.com", PASSWORD),
            ("known@example.com", "wrong-password"),
            ("inactive@example.com", PASSWORD),
        ):
            with pytest.raises(InvalidCredentialsError) as excinfo:
                await auth_service.signin_email(email, password, _activity())
            errors.append((str(excinfo.value), excinfo.value.error_code))

        assert len(set(errors)) == 1

    async def test_failed_signin_of_known_user_is_recorded(
        self, memory_store, auth_service
    ):
        user = _seed(memory_store, auth_service, "inactive@example.com", is_active=False)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.signin_email("inactive@example.com", PASSWORD, _activity())

        [event] = memory_store.list_signin_events(user.id, 0, 10)
        assert event.outcome is SigninOutcome.FAILED
        assert event.reason == "inactive"

    async def test_provider_mask_must_allow_email(self, memory_store, auth_service):
        _seed(
            memory_store,
            auth_service,
            "google-only@example.com",
            authorized_provider=Provider.GOOGLE,
        )
        with pytest.raises(InvalidCredentialsError):
            await auth_service.signin_email(
                "google-only@example.com", PASSWORD, _activity()
            )


class _FakeCache:
    def __init__(self, allowed=True, fail=False):
        self.allowed = allowed
        self.fail = fail
        self.keys = []

    async def check_rate_limit(self, key, limit, window_seconds):
        if self.fail:
            raise ConnectionError("redis down")
        self.keys.append(key)
        return self.allowed

    async def is_refresh_consumed(self, token):
        return False

    async def mark_refresh_consumed(self, token, ttl):
        return None


class TestRateLimit:
    async def test_no_cache_means_no_rate_limit(self, memory_store, auth_service, settings):
        _seed(memory_store, auth_service, "many@example.com")
        for _ in range(settings.signin_rate_limit_per_minute + 2):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.signin_email("many@example.com", "nope-nope", _activity())

    async def test_rate_limited_before_password_check(self, memory_store, settings):
        cache = _FakeCache(allowed=False)
        service = AuthService(memory_store, cache, settings)
        with pytest.raises(RateLimitedError) as excinfo:
            await service.signin_email(" limited@example.com ", PASSWORD, _activity())
        assert excinfo.value.retryable is True
        assert cache.keys == ["signin:limited@example.com"]

    async def test_cache_errors_fail_open(self, memory_store, settings):
        service = AuthService(memory_store, _FakeCache(fail=True), settings)
        _seed(memory_store, service, "open@example.com")
        auth_user = await service.signin_email("open@example.com", PASSWORD, _activity())
        assert auth_user.auth_token


class TestSessions:
    async def test_verify_slides_only_the_auth_expiry(self, memory_store, auth_service):
        _seed(memory_store, auth_service, "slide@example.com")
        auth_user = await auth_service.signin_email("slide@example.com", PASSWORD, _activity())

        stored = memory_store.sessions[auth_user.auth_token]
        memory_store.sessions[auth_user.auth_token] = replace(
            stored, auth_token_expiry=now_ts() + 10
        )

        verified = await auth_service.verify_session(auth_user.auth_token, _activity())

        assert verified.id == auth_user.id
        assert verified.auth_token_expiry >= now_ts() + auth_service.tokens.auth_idle_seconds - 5
        assert verified.refresh_token_expiry == auth_user.refresh_token_expiry

    async def test_expired_or_unknown_token_fails(self, memory_store, auth_service):
        _seed(memory_store, auth_service, "late@example.com")
        auth_user = await auth_service.signin_email("late@example.com", PASSWORD, _activity())
        stored = memory_store.sessions[auth_user.auth_token]
        memory_store.sessions[auth_user.auth_token] = replace(
            stored, auth_token_expiry=now_ts() - 1
        )

        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session(auth_user.auth_token, _activity())
        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session("not-a-token", _activity())
        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session("", _activity())

    async def test_device_mismatch_kills_both_tokens(self, memory_store, auth_service):
        user = _seed(memory_store, auth_service, "device@example.com")
        auth_user = await auth_service.signin_email(
            "device@example.com", PASSWORD, _activity(device="Firefox on Linux")
        )

        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session(
                auth_user.auth_token, _activity(device="Chrome on Windows")
            )
        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session(
                auth_user.auth_token, _activity(device="Firefox on Linux")
            )
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.signin_refresh(
                auth_user.refresh_token, _activity(device="Firefox on Linux")
            )

        flagged = [
            e
            for e in memory_store.list_signin_events(user.id, 0, 10)
            if e.outcome is SigninOutcome.FLAGGED
        ]
        assert [e.reason for e in flagged] == ["device_mismatch"]

    async def test_signout_revokes_one_session(self, memory_store, auth_service):
        _seed(memory_store, auth_service, "out@example.com")
        first = await auth_service.signin_email("out@example.com", PASSWORD, _activity())
        second = await auth_service.signin_email("out@example.com", PASSWORD, _activity())

        assert await auth_service.signout(first.auth_token) is True
        assert await auth_service.signout(first.auth_token) is False
        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session(first.auth_token, _activity())
        assert (await auth_service.verify_session(second.auth_token, _activity())).id == second.id

        assert await auth_service.signout_everywhere(second) == 1
        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session(second.auth_token, _activity())

    async def test_deactivated_user_session_fails(self, memory_store, auth_service):
        user = _seed(memory_store, auth_service, "off@example.com")
        auth_user = await auth_service.signin_email("off@example.com", PASSWORD, _activity())
        memory_store.update_user(user.id, {"is_active": False})
        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session(auth_user.auth_token, _activity())


class TestRefresh:
    async def test_refresh_rotates_and_rejects_reuse(self, memory_store, auth_service):
        user = _seed(memory_store, auth_service, "rotate@example.com")
        original = await auth_service.signin_email("rotate@example.com", PASSWORD, _activity())

        rotated = await auth_service.signin_refresh(original.refresh_token, _activity())

        assert rotated.id == user.id
        assert rotated.auth_token != original.auth_token
        assert rotated.refresh_token != original.refresh_token
        assert (await auth_service.verify_session(rotated.auth_token, _activity())).id == user.id
        # the old auth token went with the old refresh token
        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session(original.auth_token, _activity())

        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.signin_refresh(original.refresh_token, _activity())

        reasons = [e.reason for e in memory_store.list_signin_events(user.id, 0, 10)]
        assert "refresh_replay" in reasons
        assert "refresh" in reasons

    async def test_concurrent_refresh_has_one_winner(self, memory_store, auth_service):
        _seed(memory_store, auth_service, "race@example.com")
        original = await auth_service.signin_email("race@example.com", PASSWORD, _activity())

        results = await asyncio.gather(
            *[
                auth_service.signin_refresh(original.refresh_token, _activity())
                for _ in range(5)
            ],
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, AuthUser)]
        losers = [r for r in results if isinstance(r, InvalidRefreshTokenError)]
        assert len(winners) == 1
        assert len(losers) == 4

    async def test_device_change_on_refresh_is_flagged_not_refused(
        self, memory_store, auth_service
    ):
        user = _seed(memory_store, auth_service, "travel@example.com")
        original = await auth_service.signin_email(
            "travel@example.com", PASSWORD, _activity(device="Safari on iOS")
        )

        rotated = await auth_service.signin_refresh(
            original.refresh_token, _activity(device="Safari on macOS")
        )

        assert rotated.auth_token
        flagged = [
            e
            for e in memory_store.list_signin_events(user.id, 0, 10)
            if e.outcome is SigninOutcome.FLAGGED
        ]
        assert [e.reason for e in flagged] == ["device_mismatch"]
        # the new session is bound to the new device
        verified = await auth_service.verify_session(
            rotated.auth_token, _activity(device="Safari on macOS")
        )
        assert verified.id == user.id

    async def test_unknown_refresh_token(self, auth_service):
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.signin_refresh("bogus", _activity())
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.signin_refresh("", _activity())


class TestNewUsers:
    async def test_email_signup_end_to_end(self, memory_store, auth_service, user_service):
        code = await auth_service.get_email_verify_code("a@x.com")
        privilege = await auth_service.new_user_email(code, _activity())
        assert privilege.is_new_user
        assert privilege.id == 0
        assert privilege.email == "a@x.com"

        signed_up = await user_service.signup(
            privilege,
            User(id=0, email="a@x.com", full_name="Ada X", name_to_use="Ada"),
            "pw123456",
            _activity(),
        )
        assert signed_up.id > 0
        assert signed_up.auth_token

        signed_in = await auth_service.signin_email("a@x.com", "pw123456", _activity())
        verified = await auth_service.verify_session(signed_in.auth_token, _activity())
        assert verified.id == signed_up.id
        assert verified.email == "a@x.com"

        refreshed = await auth_service.signin_refresh(signed_in.refresh_token, _activity())
        assert refreshed.id == signed_up.id
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.signin_refresh(signed_in.refresh_token, _activity())

        # codes are single use
        with pytest.raises(InvalidVerifyCodeError):
            await auth_service.new_user_email(code, _activity())

    async def test_verify_code_for_existing_email_is_rejected(
        self, memory_store, auth_service
    ):
        _seed(memory_store, auth_service, "taken@example.com")
        code = await auth_service.get_email_verify_code(" taken@example.com")
        with pytest.raises(DuplicateEmailError):
            await auth_service.new_user_email(code, _activity())

    async def test_bad_verify_code(self, auth_service):
        with pytest.raises(InvalidVerifyCodeError) as excinfo:
            await auth_service.new_user_email("nope", _activity())
        assert excinfo.value.field == "code"
        with pytest.raises(ValidationError):
            await auth_service.get_email_verify_code("not-an-email")

    async def test_new_user_roles_are_masked(self, memory_store, auth_service, user_service):
        await user_service.bootstrap_superuser("root@example.com", "Root", "Root", PASSWORD)
        code = await auth_service.get_email_verify_code("climber@example.com")
        privilege = await auth_service.new_user_email(code, _activity())

        created = await user_service.create_user(
            privilege,
            _draft("climber@example.com", Role.SUPER | Role.ADMIN),
            PASSWORD,
        )
        assert created.roles == Role.NONE

    async def test_new_user_may_only_create_its_own_email(
        self, auth_service, user_service
    ):
        code = await auth_service.get_email_verify_code("mine@example.com")
        privilege = await auth_service.new_user_email(code, _activity())
        with pytest.raises(UnauthorizedError):
            await user_service.create_user(privilege, _draft("theirs@example.com"), PASSWORD)

    async def test_concurrent_duplicate_email_has_one_winner(
        self, memory_store, auth_service, user_service
    ):
        await user_service.bootstrap_superuser("root@example.com", "Root", "Root", PASSWORD)
        root = await auth_service.signin_email("root@example.com", PASSWORD, _activity())

        results = await asyncio.gather(
            user_service.create_user(root, _draft("twin@example.com"), PASSWORD),
            user_service.create_user(root, _draft(" twin@example.com "), PASSWORD),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, User)]
        duplicates = [r for r in results if isinstance(r, DuplicateEmailError)]
        assert len(created) == 1
        assert len(duplicates) == 1


class TestUserLifecycle:
    async def test_bootstrap_superuser_cannot_lose_super(self, auth_service, user_service):
        first = await user_service.bootstrap_superuser(
            "owner@example.com", "Owner", "Owner", PASSWORD
        )
        assert first.id == 1
        assert first.roles & Role.SUPER

        owner = await auth_service.signin_email("owner@example.com", PASSWORD, _activity())
        with pytest.raises(UnauthorizedError):
            await user_service.update_user(owner, replace(first, roles=Role.NONE), {"roles"})

        with pytest.raises(ConflictError):
            await user_service.bootstrap_superuser(
                "second@example.com", "Second", "Second", PASSWORD
            )

    async def test_bootstrap_refuses_a_populated_store_before_hashing(
        self, memory_store, auth_service, user_service, monkeypatch
    ):
        seeded = _seed(memory_store, auth_service, "early@example.com")
        memory_store.delete_user(seeded.id)
        _seed(memory_store, auth_service, "later@example.com")
        assert memory_store.get_user(1) is None

        def _no_hashing(password):
            raise AssertionError("hashed a password for a refused bootstrap")

        monkeypatch.setattr(user_service.verifier, "hash_password", _no_hashing)
        with pytest.raises(ConflictError):
            await user_service.bootstrap_superuser(
                "root@example.com", "Root", "Root", PASSWORD
            )

    async def test_admin_creates_with_masked_roles(self, memory_store, auth_service, user_service):
        await user_service.bootstrap_superuser("root@example.com", "Root", "Root", PASSWORD)
        _seed(memory_store, auth_service, "admin@example.com", roles=Role.ADMIN)
        admin = await auth_service.signin_email("admin@example.com", PASSWORD, _activity())

        created = await user_service.create_user(
            admin, _draft("staff@example.com", Role.SUPER | Role.ADMIN), PASSWORD
        )
        assert created.roles == Role.ADMIN

        plain = _seed(memory_store, auth_service, "plain@example.com")
        plain_actor = await auth_service.signin_email("plain@example.com", PASSWORD, _activity())
        with pytest.raises(UnauthorizedError):
            await user_service.create_user(plain_actor, _draft("x@example.com"), PASSWORD)
        assert plain.roles == Role.NONE

    async def test_validation_runs_after_authorization(
        self, memory_store, auth_service, user_service
    ):
        await user_service.bootstrap_superuser("root@example.com", "Root", "Root", PASSWORD)
        root = await auth_service.signin_email("root@example.com", PASSWORD, _activity())

        with pytest.raises(ValidationError) as excinfo:
            await user_service.create_user(root, _draft("short@example.com"), "short")
        assert excinfo.value.field == "password"

        blank = User(id=0, email="blank@example.com", full_name=" ", name_to_use="B")
        with pytest.raises(ValidationError) as excinfo:
            await user_service.create_user(root, blank, PASSWORD)
        assert excinfo.value.field == "full_name"

        target = _seed(memory_store, auth_service, "target@example.com")
        with pytest.raises(ValidationError):
            await user_service.update_user(root, target, {"nickname"})

    async def test_password_change_revokes_sessions(
        self, memory_store, auth_service, user_service
    ):
        user = _seed(memory_store, auth_service, "change@example.com")
        actor = await auth_service.signin_email("change@example.com", PASSWORD, _activity())

        await user_service.update_user(actor, user, {"password"}, "brand-new-pass")

        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session(actor.auth_token, _activity())
        with pytest.raises(InvalidCredentialsError):
            await auth_service.signin_email("change@example.com", PASSWORD, _activity())
        assert await auth_service.signin_email(
            "change@example.com", "brand-new-pass", _activity()
        )

    async def test_own_email_change_needs_verify_code(
        self, memory_store, auth_service, user_service
    ):
        user = _seed(memory_store, auth_service, "before@example.com")
        actor = await auth_service.signin_email("before@example.com", PASSWORD, _activity())
        proposed = replace(user, email="after@example.com")

        with pytest.raises(InvalidVerifyCodeError):
            await user_service.update_user(actor, proposed, {"email"})

        wrong = await auth_service.get_email_verify_code("elsewhere@example.com")
        with pytest.raises(InvalidVerifyCodeError):
            await user_service.update_user(actor, proposed, {"email"}, verify_code=wrong)

        code = await auth_service.get_email_verify_code("after@example.com")
        updated = await user_service.update_user(
            actor, proposed, {"email"}, verify_code=code
        )
        assert updated.email == "after@example.com"

    async def test_admin_changes_email_without_code(
        self, memory_store, auth_service, user_service
    ):
        await user_service.bootstrap_superuser("root@example.com", "Root", "Root", PASSWORD)
        root = await auth_service.signin_email("root@example.com", PASSWORD, _activity())
        target = _seed(memory_store, auth_service, "old@example.com")
        _seed(memory_store, auth_service, "busy@example.com")

        updated = await user_service.update_user(
            root, replace(target, email=" new@example.com "), {"email"}
        )
        assert updated.email == "new@example.com"

        with pytest.raises(DuplicateEmailError):
            await user_service.update_user(
                root, replace(target, email="busy@example.com"), {"email"}
            )

    async def test_own_email_change_to_taken_address_keeps_the_code(
        self, memory_store, auth_service, user_service
    ):
        user = _seed(memory_store, auth_service, "mover@example.com")
        _seed(memory_store, auth_service, "busy@example.com")
        actor = await auth_service.signin_email("mover@example.com", PASSWORD, _activity())
        code = await auth_service.get_email_verify_code("busy@example.com")

        with pytest.raises(DuplicateEmailError):
            await user_service.update_user(
                actor, replace(user, email="busy@example.com"), {"email"}, verify_code=code
            )

        assert memory_store.get_user(user.id).email == "mover@example.com"
        pending = memory_store.consume_email_verification(code, now_ts())
        assert pending is not None
        assert pending.email == "busy@example.com"

    async def test_undefined_role_bits_are_rejected(
        self, memory_store, auth_service, user_service
    ):
        await user_service.bootstrap_superuser("root@example.com", "Root", "Root", PASSWORD)
        root = await auth_service.signin_email("root@example.com", PASSWORD, _activity())
        target = _seed(memory_store, auth_service, "bits@example.com")

        for roles in (4, Role.ADMIN | 8):
            with pytest.raises(ValidationError) as excinfo:
                await user_service.update_user(root, replace(target, roles=roles), {"roles"})
            assert excinfo.value.field == "roles"
        assert memory_store.get_user(target.id).roles == Role.NONE

        with pytest.raises(ValidationError) as excinfo:
            await user_service.update_user(
                root, replace(target, authorized_provider=16), {"authorized_provider"}
            )
        assert excinfo.value.field == "authorized_provider"

    async def test_role_change_revokes_target_sessions(
        self, memory_store, auth_service, user_service
    ):
        await user_service.bootstrap_superuser("root@example.com", "Root", "Root", PASSWORD)
        root = await auth_service.signin_email("root@example.com", PASSWORD, _activity())
        target = _seed(memory_store, auth_service, "promote@example.com")
        session = await auth_service.signin_email("promote@example.com", PASSWORD, _activity())

        updated = await user_service.update_user(
            root, replace(target, roles=Role.ADMIN), {"roles"}
        )
        assert updated.roles == Role.ADMIN
        with pytest.raises(InvalidAuthTokenError):
            await auth_service.verify_session(session.auth_token, _activity())

    async def test_delete_requires_owner_or_higher_rank(
        self, memory_store, auth_service, user_service
    ):
        await user_service.bootstrap_superuser("root@example.com", "Root", "Root", PASSWORD)
        a = _seed(memory_store, auth_service, "peer-a@example.com")
        _seed(memory_store, auth_service, "peer-b@example.com")
        actor_b = await auth_service.signin_email("peer-b@example.com", PASSWORD, _activity())
        actor_a = await auth_service.signin_email("peer-a@example.com", PASSWORD, _activity())

        with pytest.raises(UnauthorizedError):
            await user_service.delete_user(actor_b, a.id)
        with pytest.raises(UnauthorizedError):
            await user_service.delete_user(actor_b, 999)

        assert await user_service.delete_user(actor_a, a.id) is True
        assert await user_service.read_user(a.id) is None


class TestSigninHistory:
    async def test_recent_signins_newest_first_within_window(
        self, memory_store, auth_service
    ):
        user = _seed(memory_store, auth_service, "history@example.com")
        actor = await auth_service.signin_email("history@example.com", PASSWORD, _activity())
        now = now_ts()
        old = Activity(time=now - 91 * DAY, ip="1.2.3.4", device="curl")
        await auth_service.ledger.append(user.id, old, SigninOutcome.SUCCESS, Provider.EMAIL)
        for offset in (300, 200, 100):
            await auth_service.ledger.append(
                user.id,
                Activity(time=now - offset, ip="1.2.3.4", device="curl"),
                SigninOutcome.FAILED,
                Provider.EMAIL,
                "bad_password",
            )

        events = await auth_service.recent_signins(actor, user.id, 3)
        times = [e.activity.time for e in events]
        assert len(events) == 3
        assert times == sorted(times, reverse=True)
        assert all(t > now - 90 * DAY for t in times)

        everything = await auth_service.recent_signins(actor, user.id, 50)
        assert len(everything) == 4
        assert await auth_service.recent_signins(actor, user.id, 0) == []

        removed = await auth_service.purge_expired(now)
        assert removed["signin_events"] == 1
        assert len(memory_store.list_signin_events(user.id, 0, 50)) == 4

    async def test_history_is_gated(self, memory_store, auth_service):
        owner = _seed(memory_store, auth_service, "owner@example.com")
        _seed(memory_store, auth_service, "peer@example.com")
        peer = await auth_service.signin_email("peer@example.com", PASSWORD, _activity())
        with pytest.raises(UnauthorizedError):
            await auth_service.recent_signins(peer, owner.id, 5)

    async def test_signin_without_activity_time_is_recorded_now(
        self, memory_store, auth_service
    ):
        user = _seed(memory_store, auth_service, "a@x.com")
        before = now_ts()
        actor = await auth_service.signin_email(
            "a@x.com", PASSWORD, Activity(ip="1.2.3.4", device="d")
        )

        [event] = await auth_service.recent_signins(actor, user.id, 10)
        assert event.outcome is SigninOutcome.SUCCESS
        assert event.activity.time >= before
        removed = await auth_service.purge_expired()
        assert removed["signin_events"] == 0
        assert len(memory_store.list_signin_events(user.id, 0, 10)) == 1


class _SlowStore(MemoryStore):
    def get_user_by_email(self, email):
        time.sleep(0.5)
        return super().get_user_by_email(email)


class TestStoreTimeout:
    async def test_slow_store_surfaces_as_retryable_unavailable(self, tmp_path):
        settings = Settings(store_timeout_seconds=0.05)
        service = AuthService(_SlowStore(fs_root=str(tmp_path)), None, settings)

        with pytest.raises(StoreUnavailableError) as excinfo:
            await service.signin_email("slow@example.com", PASSWORD, _activity())
        assert excinfo.value.retryable is True

    async def test_explicit_timeout_overrides_default(self, tmp_path):
        service = AuthService(_SlowStore(fs_root=str(tmp_path)), None, Settings())
        with pytest.raises(StoreUnavailableError):
            await service.signin_email(
                "slow@example.com", PASSWORD, _activity(), timeout=0.05
            )
