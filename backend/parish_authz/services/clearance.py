"""Clearance comparator & escalation guard.

The single decision point for "may actor A assign/revoke role R" and "may actor A manage
user U". Both predicates are total: any missing or ambiguous input denies.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from parish_authz.models.authz import Role, User, UserRole
from parish_authz.services.registry import BYPASS, Clearance, RoleDef, RoleRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    id: int
    role_names: FrozenSet[str] = field(default_factory=frozenset)
    is_active: bool = True

    @classmethod
    def of(cls, user_id: int, role_names: Iterable[str], is_active: bool = True) -> 'Actor':
        return cls(id=user_id, role_names=frozenset(role_names), is_active=is_active)


def load_actor(session: Session, user_id: Optional[int]) -> Optional[Actor]:
    """Actor snapshot for a user id, or None when the user does not exist."""
    if user_id is None:
        return None
    user = session.get(User, user_id, populate_existing=True)
    if user is None:
        return None
    names = session.execute(
        select(Role.name).join(UserRole, UserRole.role_id == Role.id).where(UserRole.user_id == user_id)
    ).scalars().all()
    return Actor.of(user.id, names, bool(user.is_active))


def effective_clearance(registry: RoleRegistry, role_names: Iterable[str]) -> Clearance:
    """Max single-role level (never a sum); BYPASS if the bypass role is held; 0 for no roles."""
    level = 0
    for name in role_names:
        clearance = registry.get_clearance(name)
        if clearance is BYPASS:
            return BYPASS
        level = max(level, clearance)
    return level


def holds_bypass(registry: RoleRegistry, actor: Optional[Actor]) -> bool:
    if actor is None or not actor.is_active:
        return False
    return any(registry.is_bypass(name) for name in actor.role_names)


def _actor_clearance(registry: RoleRegistry, actor: Optional[Actor]) -> Clearance:
    if actor is None or not actor.is_active:
        return 0
    return effective_clearance(registry, actor.role_names)


def can_assign_role(registry: RoleRegistry, actor: Optional[Actor], role_name: Optional[str]) -> bool:
    try:
        target = registry.find_role(role_name)
        if target is None:
            return False
        actor_level = _actor_clearance(registry, actor)
        if actor_level is BYPASS:
            return True
        if target.is_bypass:
            return False
        # Strict: ties never authorize.
        return actor_level > target.clearance_level
    except Exception:
        logger.exception('Clearance check failed for role %r; denying', role_name)
        return False


def can_manage_user(registry: RoleRegistry, actor: Optional[Actor], target: Optional[Actor]) -> bool:
    try:
        if actor is None or target is None:
            return False
        actor_level = _actor_clearance(registry, actor)
        if actor_level is BYPASS:
            return True
        target_level = effective_clearance(registry, target.role_names)
        if target_level is BYPASS:
            return False
        return actor_level > target_level
    except Exception:
        logger.exception('Clearance check failed for user %r; denying', getattr(target, 'id', None))
        return False


def assignable_roles(registry: RoleRegistry, actor: Optional[Actor]) -> List[RoleDef]:
    """Roles the actor may assign, highest clearance first, ties by name."""
    return [r for r in registry.roles() if can_assign_role(registry, actor, r.name)]


__all__ = [
    'Actor', 'load_actor', 'effective_clearance', 'holds_bypass', 'can_assign_role', 'can_manage_user',
    'assignable_roles',
]
