from datetime import datetime, timezone
from flask import Blueprint, request, abort
from flask_jwt_extended import create_access_token, jwt_required
from sqlalchemy import select, func, or_
from parish_authz import get_db, get_capability_resolver
from parish_authz.models.authz import User, Role, UserRole
from parish_authz.config.pagination import normalize_pagination, page_payload
from parish_authz.decorators.auth import require_capability, current_actor_id
from parish_authz.errors import PermissionDenied, UserNotFound
from parish_authz.services import accounts, roles as role_admin
from parish_authz.services.registry import RoleRegistry

iam_bp = Blueprint('iam', __name__)


def _pagination():
    try:
        return normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    except ValueError as e:
        abort(400, description=str(e))


def _user_json(user: User, role_names=None):
    return {
        'id': user.id,
        'name': user.name,
        'email': user.email,
        'is_active': user.is_active,
        'roles': sorted(role_names or []),
        'created_by_id': user.created_by_id,
        'created_at': user.created_at.isoformat() if user.created_at else None,
        'last_login_at': user.last_login_at.isoformat() if user.last_login_at else None,
    }


def _role_names_by_user(session, user_ids):
    out = {uid: [] for uid in user_ids}
    if user_ids:
        rows = session.execute(
            select(UserRole.user_id, Role.name).join(Role, Role.id == UserRole.role_id).where(UserRole.user_id.in_(user_ids))
        ).all()
        for uid, name in rows:
            out[uid].append(name)
    return out


# --- Auth ---

@iam_bp.post('/auth/login')
def login():
    data = request.json or {}
    email = data.get('email'); password = data.get('password')
    if not email or not password:
        abort(400, description='email & password required')
    session = get_db()
    user = session.execute(select(User).where(User.email==email)).scalar_one_or_none()
    if not user or not user.verify_password(password):
        abort(401, description='invalid credentials')
    if not user.is_active:
        abort(403, description='account deactivated')
    user.last_login_at = datetime.now(timezone.utc)
    session.commit()
    # Only the identity goes in the token; capabilities are resolved per request.
    token = create_access_token(identity=str(user.id))
    return {'access_token': token}


@iam_bp.get('/auth/me')
@jwt_required()
def me():
    user_id = current_actor_id()
    session = get_db()
    user = session.get(User, user_id) if user_id is not None else None
    if not user:
        raise UserNotFound()
    body = _user_json(user, _role_names_by_user(session, [user.id])[user.id])
    body['capabilities'] = get_capability_resolver().resolve_capabilities(user.id)
    return body


@iam_bp.get('/me/capabilities')
@jwt_required()
def my_capabilities():
    return get_capability_resolver().resolve_capabilities(current_actor_id())


# --- Roles ---

@iam_bp.get('/roles')
@require_capability('view_roles')
def list_roles():
    session = get_db()
    limit, offset = _pagination()
    registry = RoleRegistry.load(session)
    all_roles = registry.roles()
    holders = dict(session.execute(
        select(UserRole.role_id, func.count()).group_by(UserRole.role_id)
    ).all())
    rows = [
        {
            'id': r.id,
            'name': r.name,
            'display_name': r.label,
            'clearance_level': r.clearance_level,
            'is_bypass': r.is_bypass,
            'permissions': sorted(r.permissions),
            'users_count': holders.get(r.id, 0),
        }
        for r in all_roles[offset:offset + limit]
    ]
    return page_payload(rows, len(all_roles), limit, offset)


@iam_bp.get('/roles/assignable')
@jwt_required()
def assignable_roles():
    return {'data': get_capability_resolver().list_assignable_roles(current_actor_id())}


@iam_bp.post('/roles')
@require_capability('manage_roles')
def create_role():
    data = request.json or {}
    level = data.get('clearance_level')
    if level is None:
        abort(400, description='clearance_level required')
    role = role_admin.create_role(
        current_actor_id(), data.get('name'), level, data.get('permissions') or [],
        display_name=data.get('display_name'), description=data.get('description'),
    )
    return {'id': role.id, 'name': role.name, 'clearance_level': role.clearance_level}, 201


@iam_bp.patch('/roles/<string:role_name>')
@require_capability('manage_roles')
def update_role(role_name: str):
    data = request.json or {}
    role = role_admin.update_role(
        current_actor_id(), role_name, clearance_level=data.get('clearance_level'),
        display_name=data.get('display_name'), description=data.get('description'),
    )
    return {'id': role.id, 'name': role.name, 'clearance_level': role.clearance_level}


@iam_bp.put('/roles/<string:role_name>/permissions')
@require_capability('manage_roles')
def replace_role_permissions(role_name: str):
    data = request.json or {}
    return role_admin.update_role_permissions(current_actor_id(), role_name, data.get('permissions') or [])


@iam_bp.delete('/roles/<string:role_name>')
@require_capability('delete_roles')
def delete_role(role_name: str):
    return role_admin.delete_role(current_actor_id(), role_name)


@iam_bp.post('/permissions')
@require_capability('manage_roles')
def add_permission():
    data = request.json or {}
    perm = role_admin.add_permission(current_actor_id(), data.get('name'))
    return {'id': perm.id, 'name': perm.name}, 201


@iam_bp.delete('/permissions/<string:name>')
@require_capability('manage_roles')
def remove_permission(name: str):
    return role_admin.remove_permission(current_actor_id(), name)


# --- Users ---

@iam_bp.get('/users')
@require_capability('view_users')
def list_users():
    session = get_db()
    limit, offset = _pagination()
    q = select(User)
    # basic filters
    search = request.args.get('search')
    role = request.args.get('role')
    status = request.args.get('status')
    if search:
        q = q.where(or_(User.name.ilike(f'%{search}%'), User.email.ilike(f'%{search}%')))
    if role:
        q = q.where(User.id.in_(
            select(UserRole.user_id).join(Role, Role.id == UserRole.role_id).where(Role.name == role)
        ))
    if status:
        if status not in ('active', 'inactive'):
            abort(400, description='status must be active or inactive')
        q = q.where(User.is_active.is_(status == 'active'))
    total = session.execute(select(func.count()).select_from(q.subquery())).scalar()
    users = session.execute(q.order_by(User.id.asc()).offset(offset).limit(limit)).scalars().all()
    names = _role_names_by_user(session, [u.id for u in users])
    return page_payload([_user_json(u, names[u.id]) for u in users], total, limit, offset)


@iam_bp.post('/users')
@require_capability('create_user')
def create_user():
    data = request.json or {}
    email = data.get('email'); name = data.get('name')
    if not email or not name:
        abort(400, description='email & name required')
    user = accounts.create_user(current_actor_id(), email, name, data.get('password'), data.get('roles') or [])
    return _user_json(user, data.get('roles') or []), 201


@iam_bp.patch('/users/<int:user_id>')
@require_capability('edit_user')
def update_user(user_id: int):
    data = request.json or {}
    if 'roles' in data:
        if not isinstance(data['roles'], list):
            abort(400, description='roles must be a list')
        if not get_capability_resolver().has_capabilities(current_actor_id(), 'assign_roles'):
            raise PermissionDenied('Missing permission')
    if 'name' in data and not data['name']:
        abort(400, description='name cannot be empty')
    if 'email' in data and not data['email']:
        abort(400, description='email cannot be empty')
    user = accounts.update_user(
        current_actor_id(), user_id, name=data.get('name'), email=data.get('email'),
        password=data.get('password'), role_names=data.get('roles'),
    )
    session = get_db()
    return _user_json(user, _role_names_by_user(session, [user.id])[user.id])


@iam_bp.put('/users/<int:user_id>/roles/<string:role_name>')
@require_capability('assign_roles')
def assign_user_role(user_id: int, role_name: str):
    return accounts.assign_role(current_actor_id(), user_id, role_name)


@iam_bp.delete('/users/<int:user_id>/roles/<string:role_name>')
@require_capability('assign_roles')
def revoke_user_role(user_id: int, role_name: str):
    return accounts.revoke_role(current_actor_id(), user_id, role_name)


@iam_bp.post('/users/<int:user_id>/deactivate')
@require_capability('edit_user')
def deactivate_user(user_id: int):
    return accounts.deactivate_user(current_actor_id(), user_id)


@iam_bp.post('/users/<int:user_id>/activate')
@require_capability('edit_user')
def activate_user(user_id: int):
    return accounts.activate_user(current_actor_id(), user_id)


@iam_bp.delete('/users/<int:user_id>')
@require_capability('delete_user')
def delete_user(user_id: int):
    return accounts.delete_user(current_actor_id(), user_id)
