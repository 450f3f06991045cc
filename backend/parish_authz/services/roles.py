"""Role & permission catalog administration.

Catalog changes affect every actor's capabilities and assignable roles, so each successful
mutation evicts the whole capability cache after commit.
"""
from __future__ import annotations
import logging
from typing import Dict, Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session
from werkzeug.exceptions import BadRequest, Conflict, NotFound

from parish_authz import get_db, get_capability_resolver
from parish_authz.constants.permissions import display_name_for
from parish_authz.errors import MANAGE_ROLE_DENIED, PermissionDenied, RoleInUse, RoleNotFound
from parish_authz.models.authz import Permission, Role, RolePermission, UserRole
from parish_authz.services.audit import add_audit
from parish_authz.services.capabilities import compute_capabilities
from parish_authz.services.clearance import Actor, effective_clearance, holds_bypass, load_actor
from parish_authz.services.registry import BYPASS, RoleRegistry
from parish_authz.services.transaction import atomic

logger = logging.getLogger(__name__)


def _require_capability(registry: RoleRegistry, actor: Optional[Actor], capability: str) -> Actor:
    if not compute_capabilities(registry, actor).get(capability, False):
        raise PermissionDenied(MANAGE_ROLE_DENIED)
    return actor


def _outranks_level(registry: RoleRegistry, actor: Actor, level: int) -> bool:
    actor_level = effective_clearance(registry, actor.role_names)
    return actor_level is BYPASS or actor_level > level


def _resolve_permissions(session: Session, names: Iterable[str]) -> Dict[str, Permission]:
    names = set(names)
    found = {p.name: p for p in session.execute(select(Permission).where(Permission.name.in_(names))).scalars()}
    missing = names - set(found)
    if missing:
        raise BadRequest(description=f'Unknown permissions: {sorted(missing)}')
    return found


def create_role(actor_id: int, name: str, clearance_level: int, permissions: Iterable[str] = (),
                display_name: Optional[str] = None, description: Optional[str] = None,
                session: Optional[Session] = None) -> Role:
    """Create a non-bypass role strictly below the actor's clearance."""
    session = session or get_db()
    if not name:
        raise BadRequest(description='name required')
    if not isinstance(clearance_level, int) or clearance_level < 0:
        raise BadRequest(description='clearance_level must be a non-negative integer')
    with atomic(session):
        registry = RoleRegistry.load(session)
        actor = _require_capability(registry, load_actor(session, actor_id), 'manage_roles')
        if not _outranks_level(registry, actor, clearance_level):
            raise PermissionDenied('You do not have permission to create roles at this clearance level')
        if name in registry:
            raise Conflict(description='role exists')
        perms = _resolve_permissions(session, permissions)
        role = Role(name=name, clearance_level=clearance_level, is_bypass=False, is_system=False,
                    display_name=display_name or display_name_for(name), description=description)
        session.add(role)
        session.flush()
        for perm in perms.values():
            session.add(RolePermission(role_id=role.id, permission_id=perm.id))
        add_audit(session, actor_id, 'ROLE.CREATE', 'Role', role.id,
                  {'name': name, 'clearance_level': clearance_level, 'permissions': sorted(perms)})
    get_capability_resolver().invalidate_all()
    logger.info('User %s created role %s (level %s)', actor_id, name, clearance_level)
    return role


def _load_managed_role(session: Session, registry: RoleRegistry, actor: Actor, role_name: str) -> Role:
    known = registry.find_role(role_name)
    if known is None:
        raise RoleNotFound()
    if known.is_bypass:
        # Bypass grants are the whole catalog by definition.
        raise PermissionDenied('The super administrator role cannot be modified')
    if not _outranks_level(registry, actor, known.clearance_level):
        raise PermissionDenied(MANAGE_ROLE_DENIED)
    return session.execute(select(Role).where(Role.id == known.id).with_for_update()).scalar_one()


def update_role(actor_id: int, role_name: str, clearance_level: Optional[int] = None,
                display_name: Optional[str] = None, description: Optional[str] = None,
                session: Optional[Session] = None) -> Role:
    session = session or get_db()
    if clearance_level is not None and (not isinstance(clearance_level, int) or clearance_level < 0):
        raise BadRequest(description='clearance_level must be a non-negative integer')
    with atomic(session):
        registry = RoleRegistry.load(session)
        actor = _require_capability(registry, load_actor(session, actor_id), 'manage_roles')
        role = _load_managed_role(session, registry, actor, role_name)
        before = role.clearance_level
        if clearance_level is not None:
            if not _outranks_level(registry, actor, clearance_level):
                raise PermissionDenied('You do not have permission to create roles at this clearance level')
            role.clearance_level = clearance_level
        if display_name is not None:
            role.display_name = display_name
        if description is not None:
            role.description = description
        add_audit(session, actor_id, 'ROLE.UPDATE', 'Role', role.id,
                  {'name': role.name, 'clearance_level': {'before': before, 'after': role.clearance_level}})
    get_capability_resolver().invalidate_all()
    return role


def update_role_permissions(actor_id: int, role_name: str, permissions: Iterable[str],
                            session: Optional[Session] = None) -> Dict:
    """Replace a role's grant set."""
    session = session or get_db()
    with atomic(session):
        registry = RoleRegistry.load(session)
        actor = _require_capability(registry, load_actor(session, actor_id), 'manage_roles')
        role = _load_managed_role(session, registry, actor, role_name)
        perms = _resolve_permissions(session, permissions)
        session.execute(delete(RolePermission).where(RolePermission.role_id == role.id))
        for perm in perms.values():
            session.add(RolePermission(role_id=role.id, permission_id=perm.id))
        add_audit(session, actor_id, 'ROLE.PERM.REPLACE', 'Role', role.id, {'name': role.name, 'count': len(perms)})
    get_capability_resolver().invalidate_all()
    logger.info('User %s replaced permissions of role %s (%d)', actor_id, role_name, len(perms))
    return {'name': role_name, 'permissions': sorted(perms)}


def delete_role(actor_id: int, role_name: str, session: Optional[Session] = None) -> Dict:
    """Delete a role nobody holds; holders must be reassigned first."""
    session = session or get_db()
    with atomic(session):
        registry = RoleRegistry.load(session)
        actor = _require_capability(registry, load_actor(session, actor_id), 'delete_roles')
        role = _load_managed_role(session, registry, actor, role_name)
        holders = session.execute(
            select(func.count()).select_from(UserRole).where(UserRole.role_id == role.id)
        ).scalar()
        if holders:
            raise RoleInUse(f"Cannot delete role '{role.name}' because it has assigned users")
        add_audit(session, actor_id, 'ROLE.DELETE', 'Role', role.id, {'name': role.name})
        session.delete(role)
    get_capability_resolver().invalidate_all()
    logger.info('User %s deleted role %s', actor_id, role_name)
    return {'name': role_name, 'status': 'deleted'}


def _require_bypass(registry: RoleRegistry, actor: Optional[Actor]) -> Actor:
    if not holds_bypass(registry, actor):
        raise PermissionDenied(MANAGE_ROLE_DENIED)
    return actor


def add_permission(actor_id: int, name: str, session: Optional[Session] = None) -> Permission:
    session = session or get_db()
    if not name:
        raise BadRequest(description='name required')
    with atomic(session):
        registry = RoleRegistry.load(session)
        _require_bypass(registry, load_actor(session, actor_id))
        if name in registry.permissions:
            raise Conflict(description='permission exists')
        perm = Permission(name=name)
        session.add(perm)
        session.flush()
        # The bypass role holds the whole catalog.
        if registry.bypass_role is not None:
            session.add(RolePermission(role_id=registry.bypass_role.id, permission_id=perm.id))
        add_audit(session, actor_id, 'PERMISSION.CREATE', 'Permission', perm.id, {'name': name})
    get_capability_resolver().invalidate_all()
    return perm


def remove_permission(actor_id: int, name: str, session: Optional[Session] = None) -> Dict:
    """Remove a permission from the catalog and from every role's grant set."""
    session = session or get_db()
    with atomic(session):
        registry = RoleRegistry.load(session)
        _require_bypass(registry, load_actor(session, actor_id))
        perm = session.execute(select(Permission).where(Permission.name == name)).scalar_one_or_none()
        if perm is None:
            raise NotFound(description='Permission not found')
        result = session.execute(delete(RolePermission).where(RolePermission.permission_id == perm.id))
        add_audit(session, actor_id, 'PERMISSION.DELETE', 'Permission', perm.id,
                  {'name': name, 'roles_affected': result.rowcount})
        session.delete(perm)
    get_capability_resolver().invalidate_all()
    logger.info('User %s removed permission %r from catalog', actor_id, name)
    return {'name': name, 'status': 'deleted'}


__all__ = [
    'create_role', 'update_role', 'update_role_permissions', 'delete_role', 'add_permission', 'remove_permission',
]
