"""Role-based gate for creating, updating and deleting user records.

Ranks are SUPER > ADMIN > none. Account 1 always counts as SUPER. The gate
only answers yes/no; callers turn a no into ``UnauthorizedError`` so the
violated rule is never revealed.
"""

from __future__ import annotations

from typing import AbstractSet

from gatehouse.storage.models import (
    DERIVED_FIELDS,
    FIRST_USER_ID,
    AuthUser,
    Role,
    User,
    normalize_email,
    role_rank,
)


def _is_owner(actor: AuthUser, target: User) -> bool:
    return not actor.is_new_user and actor.id != 0 and actor.id == target.id


def _outranks(actor: AuthUser, target: User) -> bool:
    if actor.is_new_user:
        return False
    return role_rank(actor.effective_roles) > role_rank(target.effective_roles)


def can_create(actor: AuthUser, target: User) -> bool:
    if actor.is_new_user:
        return normalize_email(actor.email) == normalize_email(target.email)
    return actor.is_admin or actor.is_super


def creation_roles(actor: AuthUser, target: User) -> Role:
    """Roles the new record may carry: never more than the creator holds."""
    return Role(target.roles) & actor.grantable_roles


def can_update(
    actor: AuthUser, current: User, proposed: User, fields: AbstractSet[str]
) -> bool:
    if fields & DERIVED_FIELDS:
        return False
    if not (_is_owner(actor, current) or _outranks(actor, current)):
        return False
    if "roles" not in fields:
        return True

    before = current.effective_roles
    after = Role(proposed.roles)
    added = after & ~before
    removed = before & ~after
    if added & Role.ADMIN and not (actor.is_admin or actor.is_super):
        return False
    if removed & Role.ADMIN and not actor.is_super:
        return False
    if (added | removed) & Role.SUPER and not actor.is_super:
        return False
    if current.id == FIRST_USER_ID and not after & Role.SUPER:
        return False
    return True


def can_delete(actor: AuthUser, target: User) -> bool:
    return _is_owner(actor, target) or _outranks(actor, target)


def can_view_history(actor: AuthUser, target: User) -> bool:
    return _is_owner(actor, target) or _outranks(actor, target)
