"""User/role mutation entry points consumed by the CRUD layer.

Every operation runs its guards and its mutation inside one transaction (see ``atomic``):
lookups first, then last-administrator protection, then self-target protection, then the
clearance guard. The affected actor's cached capabilities are evicted only after commit.
"""
from __future__ import annotations
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.exceptions import Conflict

from parish_authz import get_db, get_capability_resolver
from parish_authz.errors import (
    ASSIGN_DENIED, MANAGE_USER_DENIED, REVOKE_DENIED, InvalidRole, PermissionDenied, SelfTargetProhibited,
    UserNotFound,
)
from parish_authz.models.audit import AuditLog
from parish_authz.models.authz import User, UserRole
from parish_authz.services.audit import add_audit
from parish_authz.services.bootstrap import assert_keeps_bypass_holder
from parish_authz.services.clearance import Actor, can_assign_role, can_manage_user, load_actor
from parish_authz.services.registry import RoleRegistry
from parish_authz.services.transaction import atomic

logger = logging.getLogger(__name__)

# A check returns True when the user is referenced by historical records (sacraments, tithes,
# ...) that must keep pointing at it; such users are deactivated instead of deleted.
HistoryCheck = Callable[[Session, int], bool]
_history_checks: List[HistoryCheck] = []


def register_history_check(check: HistoryCheck) -> HistoryCheck:
    """Register a check; usable as a decorator by the CRUD layer owning other tables."""
    _history_checks.append(check)
    return check


def unregister_history_check(check: HistoryCheck) -> None:
    if check in _history_checks:
        _history_checks.remove(check)


@register_history_check
def _created_other_users(session: Session, user_id: int) -> bool:
    return bool(session.execute(select(exists().where(User.created_by_id == user_id))).scalar())


@register_history_check
def _authored_audit_entries(session: Session, user_id: int) -> bool:
    return bool(session.execute(select(exists().where(AuditLog.actor_user_id == user_id))).scalar())


def has_history(session: Session, user_id: int) -> bool:
    return any(check(session, user_id) for check in _history_checks)


def _load_target(session: Session, user_id: int, lock: bool = True) -> User:
    stmt = select(User).where(User.id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    user = session.execute(stmt).scalar_one_or_none()
    if user is None:
        raise UserNotFound()
    return user


def _target_actor(session: Session, user: User) -> Actor:
    actor = load_actor(session, user.id)
    # load_actor only returns None for missing users and the row is locked above.
    return actor if actor is not None else Actor.of(user.id, ())


def assign_role(actor_id: int, target_user_id: int, role_name: str, session: Optional[Session] = None) -> Dict:
    session = session or get_db()
    with atomic(session):
        registry = RoleRegistry.load(session)
        role = registry.find_role(role_name)
        if role is None:
            raise InvalidRole()
        target = _load_target(session, target_user_id)
        actor = load_actor(session, actor_id)
        if not can_assign_role(registry, actor, role.name) or \
                not can_manage_user(registry, actor, _target_actor(session, target)):
            logger.info('Denied role assignment of %s to user %s by %s', role.name, target.id, actor_id)
            raise PermissionDenied(ASSIGN_DENIED)
        held = session.execute(
            select(UserRole).where(UserRole.user_id == target.id, UserRole.role_id == role.id)
        ).scalar_one_or_none()
        assigned = held is None
        if assigned:
            session.add(UserRole(user_id=target.id, role_id=role.id))
            add_audit(session, actor_id, 'USER.ROLE.ASSIGN', 'User', target.id, {'role': role.name})
    if assigned:
        get_capability_resolver().invalidate_actor(target_user_id)
        logger.info('User %s assigned role %s to user %s', actor_id, role.name, target_user_id)
    return {'user_id': target_user_id, 'role': role.name, 'assigned': assigned}


def revoke_role(actor_id: int, target_user_id: int, role_name: str, session: Optional[Session] = None) -> Dict:
    session = session or get_db()
    with atomic(session):
        registry = RoleRegistry.load(session)
        role = registry.find_role(role_name)
        if role is None:
            raise InvalidRole()
        target = _load_target(session, target_user_id)
        held_names = _target_actor(session, target).role_names
        if role.is_bypass:
            assert_keeps_bypass_holder(session, registry, target.id)
        if actor_id == target.id and held_names == {role.name}:
            raise SelfTargetProhibited('You cannot remove your own last role')
        actor = load_actor(session, actor_id)
        if not can_assign_role(registry, actor, role.name) or \
                not can_manage_user(registry, actor, Actor.of(target.id, held_names)):
            logger.info('Denied revocation of %s from user %s by %s', role.name, target.id, actor_id)
            raise PermissionDenied(REVOKE_DENIED)
        held = session.execute(
            select(UserRole).where(UserRole.user_id == target.id, UserRole.role_id == role.id)
        ).scalar_one_or_none()
        revoked = held is not None
        if revoked:
            session.delete(held)
            add_audit(session, actor_id, 'USER.ROLE.REVOKE', 'User', target.id, {'role': role.name})
    if revoked:
        get_capability_resolver().invalidate_actor(target_user_id)
        logger.info('User %s revoked role %s from user %s', actor_id, role.name, target_user_id)
    return {'user_id': target_user_id, 'role': role.name, 'revoked': revoked}


def _guard_user_management(session: Session, registry: RoleRegistry, actor_id: int, target: User, verb: str):
    if target.is_active:
        assert_keeps_bypass_holder(session, registry, target.id)
    if actor_id == target.id:
        raise SelfTargetProhibited(f'You cannot {verb} your own account')
    actor = load_actor(session, actor_id)
    if not can_manage_user(registry, actor, _target_actor(session, target)):
        logger.info('Denied %s of user %s by %s', verb, target.id, actor_id)
        raise PermissionDenied(MANAGE_USER_DENIED)


def deactivate_user(actor_id: int, target_user_id: int, session: Optional[Session] = None) -> Dict:
    session = session or get_db()
    with atomic(session):
        registry = RoleRegistry.load(session)
        target = _load_target(session, target_user_id)
        _guard_user_management(session, registry, actor_id, target, 'deactivate')
        changed = bool(target.is_active)
        if changed:
            target.is_active = False
            add_audit(session, actor_id, 'USER.DEACTIVATE', 'User', target.id)
    if changed:
        get_capability_resolver().invalidate_actor(target_user_id)
        logger.info('User %s deactivated user %s', actor_id, target_user_id)
    return {'user_id': target_user_id, 'is_active': False}


def activate_user(actor_id: int, target_user_id: int, session: Optional[Session] = None) -> Dict:
    session = session or get_db()
    with atomic(session):
        registry = RoleRegistry.load(session)
        target = _load_target(session, target_user_id)
        if actor_id == target.id:
            raise SelfTargetProhibited('You cannot change your own status')
        actor = load_actor(session, actor_id)
        if not can_manage_user(registry, actor, _target_actor(session, target)):
            raise PermissionDenied(MANAGE_USER_DENIED)
        changed = not target.is_active
        if changed:
            target.is_active = True
            add_audit(session, actor_id, 'USER.ACTIVATE', 'User', target.id)
    if changed:
        get_capability_resolver().invalidate_actor(target_user_id)
    return {'user_id': target_user_id, 'is_active': True}


def delete_user(actor_id: int, target_user_id: int, session: Optional[Session] = None) -> Dict:
    """Hard delete, or soft deactivate when historical records reference the user."""
    session = session or get_db()
    with atomic(session):
        registry = RoleRegistry.load(session)
        target = _load_target(session, target_user_id)
        _guard_user_management(session, registry, actor_id, target, 'delete')
        if has_history(session, target.id):
            status = 'deactivated'
            target.is_active = False
            add_audit(session, actor_id, 'USER.DEACTIVATE', 'User', target.id, {'reason': 'has history'})
        else:
            status = 'deleted'
            add_audit(session, actor_id, 'USER.DELETE', 'User', target.id, {'email': target.email})
            session.delete(target)
    get_capability_resolver().invalidate_actor(target_user_id)
    logger.info('User %s %s user %s', actor_id, status, target_user_id)
    return {'user_id': target_user_id, 'status': status}


EMAIL_TAKEN = 'email already registered'


def _email_taken(session: Session, email: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(func.count()).select_from(User).where(User.email == email)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return bool(session.execute(stmt).scalar())


def _flush_unique_email(session: Session) -> None:
    # A concurrent insert can still win the race after _email_taken said no.
    try:
        session.flush()
    except IntegrityError as e:
        raise Conflict(description=EMAIL_TAKEN) from e


def create_user(actor_id: int, email: str, name: str, password: Optional[str] = None,
                role_names: Iterable[str] = (), session: Optional[Session] = None) -> User:
    """Create an account on behalf of actor, optionally with initial roles.

    Each initial role goes through the same assignment guard as assign_role.
    """
    session = session or get_db()
    role_names = list(dict.fromkeys(role_names))
    with atomic(session):
        registry = RoleRegistry.load(session)
        roles = []
        for rn in role_names:
            role = registry.find_role(rn)
            if role is None:
                raise InvalidRole()
            roles.append(role)
        actor = load_actor(session, actor_id)
        if not can_manage_user(registry, actor, Actor.of(0, ())):
            raise PermissionDenied(MANAGE_USER_DENIED)
        for role in roles:
            if not can_assign_role(registry, actor, role.name):
                raise PermissionDenied(ASSIGN_DENIED)
        if _email_taken(session, email):
            raise Conflict(description=EMAIL_TAKEN)
        user = User(name=name, email=email, password_hash='', is_active=True, created_by_id=actor.id)
        if password:
            user.set_password(password)
        session.add(user)
        _flush_unique_email(session)
        for role in roles:
            session.add(UserRole(user_id=user.id, role_id=role.id))
        add_audit(session, actor_id, 'USER.CREATE', 'User', user.id,
                  {'email': email, 'roles': [r.name for r in roles]})
    # Ids can be reused after a hard delete.
    get_capability_resolver().invalidate_actor(user.id)
    logger.info('User %s created user %s', actor_id, user.id)
    return user


def update_user(actor_id: int, target_user_id: int, name: Optional[str] = None, email: Optional[str] = None,
                password: Optional[str] = None, role_names: Optional[Sequence[str]] = None,
                session: Optional[Session] = None) -> User:
    """Edit profile fields and, when role_names is given, replace the user's role set.

    The role set is diffed against what the user holds: every added role is checked like
    assign_role and every removed one like revoke_role. Users may edit their own profile, but
    editing anyone else requires outranking them. Nothing is written unless every check passes.
    """
    session = session or get_db()
    with atomic(session):
        registry = RoleRegistry.load(session)
        wanted = None
        if role_names is not None:
            wanted = {}
            for rn in dict.fromkeys(role_names):
                role = registry.find_role(rn)
                if role is None:
                    raise InvalidRole()
                wanted[role.name] = role
        target = _load_target(session, target_user_id)
        held_names = _target_actor(session, target).role_names
        added: List[str] = []
        removed: List[str] = []
        if wanted is not None:
            added = sorted(set(wanted) - held_names)
            removed = sorted(held_names - set(wanted))
            if any(registry.is_bypass(rn) for rn in removed):
                assert_keeps_bypass_holder(session, registry, target.id)
            if actor_id == target.id and held_names and not wanted:
                raise SelfTargetProhibited('You cannot remove your own last role')
        actor = load_actor(session, actor_id)
        # Own profile fields are editable; own roles still go through the per-role checks below.
        if actor_id != target.id and not can_manage_user(registry, actor, Actor.of(target.id, held_names)):
            logger.info('Denied update of user %s by %s', target.id, actor_id)
            raise PermissionDenied(MANAGE_USER_DENIED)
        for rn in added:
            if not can_assign_role(registry, actor, rn):
                raise PermissionDenied(ASSIGN_DENIED)
        for rn in removed:
            if not can_assign_role(registry, actor, rn):
                raise PermissionDenied(REVOKE_DENIED)

        changed = []
        if email is not None and email != target.email:
            if _email_taken(session, email, exclude_id=target.id):
                raise Conflict(description=EMAIL_TAKEN)
            target.email = email
            changed.append('email')
        if name is not None and name != target.name:
            target.name = name
            changed.append('name')
        if password:
            target.set_password(password)
            changed.append('password')
        for rn in added:
            session.add(UserRole(user_id=target.id, role_id=wanted[rn].id))
        if removed:
            removed_ids = [registry.get_role(rn).id for rn in removed]
            for link in session.execute(
                select(UserRole).where(UserRole.user_id == target.id, UserRole.role_id.in_(removed_ids))
            ).scalars():
                session.delete(link)
        _flush_unique_email(session)
        if changed or added or removed:
            add_audit(session, actor_id, 'USER.UPDATE', 'User', target.id,
                      {'fields': changed, 'roles_added': added, 'roles_removed': removed})
    if added or removed:
        get_capability_resolver().invalidate_actor(target_user_id)
    if changed or added or removed:
        logger.info('User %s updated user %s', actor_id, target_user_id)
    return target


__all__ = [
    'assign_role', 'revoke_role', 'deactivate_user', 'activate_user', 'delete_user', 'create_user', 'update_user',
    'register_history_check', 'unregister_history_check', 'has_history',
]
