from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntFlag
from typing import Optional


def now_ts() -> int:
    """Current time as unix seconds."""
    return int(time.time())


def normalize_email(email: str) -> str:
    """Drop surrounding whitespace. Addresses are otherwise compared exactly."""
    return (email or "").strip()


class Role(IntFlag):
    NONE = 0
    ADMIN = 1
    SUPER = 2


class Provider(IntFlag):
    """Sign-in providers. ``User.authorized_provider`` is a mask of these."""

    EMAIL = 1
    GOOGLE = 2
    FACEBOOK = 4


_ROLE_RANK = {Role.NONE: 0, Role.ADMIN: 1, Role.SUPER: 2}

# id of the bootstrap account; always SUPER
FIRST_USER_ID = 1


def highest_role(roles: Role) -> Role:
    if roles & Role.SUPER:
        return Role.SUPER
    if roles & Role.ADMIN:
        return Role.ADMIN
    return Role.NONE


def role_rank(roles: Role) -> int:
    return _ROLE_RANK[highest_role(roles)]


def effective_roles(user_id: int, roles: Role) -> Role:
    if user_id == FIRST_USER_ID:
        return Role(roles) | Role.SUPER
    return Role(roles)


@dataclass(frozen=True)
class Activity:
    time: int = 0
    ip: str = ""
    device: str = ""


@dataclass
class User:
    id: int
    email: str
    full_name: str
    name_to_use: str
    is_active: bool = True
    roles: Role = Role.NONE
    password_hash: Optional[str] = field(default=None, repr=False)
    authorized_provider: Provider = Provider.EMAIL
    created_at: int = 0
    updated_at: int = 0
    active_at: int = 0

    @property
    def effective_roles(self) -> Role:
        return effective_roles(self.id, self.roles)


# Fields an actor may name in an update request.
UPDATABLE_FIELDS = frozenset(
    {
        "email",
        "full_name",
        "name_to_use",
        "is_active",
        "roles",
        "authorized_provider",
        "password",
    }
)

# Derived by the store; never actor-settable.
DERIVED_FIELDS = frozenset({"id", "created_at", "updated_at", "active_at", "password_hash"})


@dataclass
class Session:
    auth_token: str = field(repr=False)
    auth_token_expiry: int
    refresh_token: str = field(repr=False)
    refresh_token_expiry: int
    user_id: int
    provider: Provider
    activity: Activity
    refresh_consumed_at: Optional[int] = None
    created_at: int = 0


class SigninOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    FLAGGED = "flagged"


@dataclass
class SigninEvent:
    id: int
    user_id: int
    activity: Activity
    outcome: SigninOutcome
    provider: Provider
    reason: Optional[str] = None


@dataclass
class EmailVerification:
    code: str = field(repr=False)
    email: str
    expires_at: int


@dataclass(frozen=True)
class AuthUser:
    """An authenticated identity handed to callers after sign-in.

    Built only by the sign-in and new-user operations and passed explicitly
    into every gated operation. ``id`` is 0 while ``is_new_user`` is set; that
    privilege allows creating exactly one ``User`` with the same email.
    """

    id: int
    provider: Provider
    email: str
    full_name: str = ""
    name_to_use: str = ""
    roles: Role = Role.NONE
    is_new_user: bool = False
    auth_token: str = field(default="", repr=False)
    auth_token_expiry: int = 0
    refresh_token: str = field(default="", repr=False)
    refresh_token_expiry: int = 0
    this_signin: Activity = field(default_factory=Activity)

    @property
    def effective_roles(self) -> Role:
        return effective_roles(self.id, self.roles)

    @property
    def is_admin(self) -> bool:
        return bool(self.roles & Role.ADMIN)

    @property
    def is_super(self) -> bool:
        return bool(self.effective_roles & Role.SUPER)

    @property
    def grantable_roles(self) -> Role:
        return self.effective_roles

    @property
    def highest_role(self) -> Role:
        return highest_role(self.effective_roles)
