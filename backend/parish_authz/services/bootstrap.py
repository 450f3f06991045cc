"""Bootstrap & default-account policy.

Keeps the system administrable: the catalog is seeded idempotently, one configured account
is promoted to the bypass role when nobody holds it, and no mutation may leave zero active
bypass holders.
"""
from __future__ import annotations
import logging
from typing import Dict, Iterable, Mapping, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from parish_authz.constants.permissions import (
    ALL_PERMISSION_NAMES, ROLE_DESCRIPTIONS, ROLE_SEED, RoleSeedRow, display_name_for,
)
from parish_authz.errors import LastAdminProtection
from parish_authz.models.audit import AuditLog
from parish_authz.models.authz import Permission, Role, RolePermission, User, UserRole
from parish_authz.services.audit import add_audit
from parish_authz.services.registry import RoleRegistry

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_EMAIL = 'admin@parish.com'


def ensure_permissions(session: Session, names: Iterable[str] = ALL_PERMISSION_NAMES) -> Dict[str, Permission]:
    existing = {p.name: p for p in session.execute(select(Permission)).scalars().all()}
    for name in names:
        if name not in existing:
            perm = Permission(name=name)
            session.add(perm)
            existing[name] = perm
    session.flush()
    return existing


def retired_permission_names(session: Session) -> Set[str]:
    """Names taken out of the catalog with remove_permission; reseeding never brings them back."""
    metas = session.execute(select(AuditLog.meta).where(AuditLog.action == 'PERMISSION.DELETE')).scalars().all()
    return {m['name'] for m in metas if m and m.get('name')}


def _granted_names(session: Session, role_id: int) -> Set[str]:
    return set(session.execute(
        select(Permission.name)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role_id)
    ).scalars().all())


def _grant(session: Session, role: Role, names: Iterable[str], perms_by_name: Mapping[str, Permission],
           retired: Set[str]) -> None:
    for name in sorted(names):
        perm = perms_by_name.get(name)
        if perm is None:
            if name not in retired:
                logger.warning('Role %s references missing permission %r', role.name, name)
            continue
        session.add(RolePermission(role_id=role.id, permission_id=perm.id))


def seed_catalog(session: Session, seed: Iterable[RoleSeedRow] = ROLE_SEED,
                 overrides: Optional[Mapping[str, int]] = None,
                 permissions: Iterable[str] = ALL_PERMISSION_NAMES) -> Dict[str, int]:
    """Create the seeded permissions and roles that are missing.

    Existing roles belong to their administrators: their grants are never reset and only
    configured clearance overrides are applied to them. The bypass role is topped up to the
    whole live catalog. Retired permissions stay retired. Idempotent; does not commit.
    """
    overrides = overrides or {}
    retired = retired_permission_names(session)
    before = set(session.execute(select(Permission.name)).scalars().all())
    perms_by_name = ensure_permissions(session, [n for n in permissions if n not in retired])
    # Validates the seed (unique names, single bypass) before any role is written;
    # '*' expands against the live catalog, runtime additions included.
    registry = RoleRegistry.from_seed(seed, overrides, perms_by_name.keys())
    existing_roles = {
        r.name: r
        for r in session.execute(select(Role).execution_options(populate_existing=True)).scalars().all()
    }
    created_roles = 0
    for seeded in registry.roles():
        role = existing_roles.get(seeded.name)
        if role is None:
            role = Role(name=seeded.name, is_system=True, clearance_level=seeded.clearance_level,
                        is_bypass=seeded.is_bypass, display_name=display_name_for(seeded.name),
                        description=ROLE_DESCRIPTIONS.get(seeded.name))
            session.add(role)
            session.flush()
            created_roles += 1
            _grant(session, role, seeded.permissions, perms_by_name, retired)
            continue
        if seeded.name in overrides and role.clearance_level != seeded.clearance_level:
            logger.info('Applying configured clearance %s to role %s (was %s)',
                        seeded.clearance_level, role.name, role.clearance_level)
            role.clearance_level = seeded.clearance_level
        if role.is_bypass:
            missing = set(perms_by_name) - _granted_names(session, role.id)
            _grant(session, role, missing, perms_by_name, retired)
    session.flush()
    return {'permissions': len(set(perms_by_name) - before), 'roles': created_roles}


def bypass_holder_ids(session: Session, registry: RoleRegistry, lock: bool = False) -> Set[int]:
    """Ids of active users holding the bypass role.

    With lock=True the matching join rows are read FOR UPDATE, serializing concurrent
    revocations on backends that support row locks.
    """
    bypass = registry.bypass_role
    if bypass is None or bypass.id is None:
        return set()
    stmt = (
        select(UserRole.user_id)
        .join(User, User.id == UserRole.user_id)
        .where(UserRole.role_id == bypass.id, User.is_active.is_(True))
    )
    if lock:
        stmt = stmt.with_for_update()
    return set(session.execute(stmt).scalars().all())


def assert_keeps_bypass_holder(session: Session, registry: RoleRegistry, target_user_id: int):
    """Raise LastAdminProtection if target is the only active bypass holder."""
    holders = bypass_holder_ids(session, registry, lock=True)
    if target_user_id in holders and not (holders - {target_user_id}):
        logger.warning('Refusing to remove the last super administrator (user %s)', target_user_id)
        raise LastAdminProtection()


def ensure_bypass_holder(session: Session, email: str = DEFAULT_ADMIN_EMAIL, name: str = 'Super Administrator',
                         password: Optional[str] = None) -> Optional[User]:
    """Promote or create the configured account when no active user holds the bypass role.

    Returns the promoted/created user, or None when a bypass holder already exists (no-op).
    Does not commit.
    """
    registry = RoleRegistry.load(session)
    bypass = registry.bypass_role
    if bypass is None:
        logger.warning('No bypass role in catalog; skipping bootstrap account')
        return None
    if bypass_holder_ids(session, registry, lock=True):
        return None
    user = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is None:
        user = User(name=name, email=email, password_hash='', is_active=True)
        if password:
            user.set_password(password)
        session.add(user)
        session.flush()
        logger.info('Created bootstrap administrator %s', email)
    else:
        user.is_active = True
        logger.info('Promoting %s to bootstrap administrator', email)
    held = session.execute(
        select(UserRole).where(UserRole.user_id == user.id, UserRole.role_id == bypass.id)
    ).scalar_one_or_none()
    if held is None:
        session.add(UserRole(user_id=user.id, role_id=bypass.id))
    add_audit(session, 0, 'USER.BOOTSTRAP', 'User', user.id, {'email': email, 'role': bypass.name})
    session.flush()
    return user


__all__ = [
    'DEFAULT_ADMIN_EMAIL', 'ensure_permissions', 'seed_catalog', 'bypass_holder_ids', 'assert_keeps_bypass_holder',
    'ensure_bypass_holder',
]
