import pytest
from sqlalchemy import select
from werkzeug.exceptions import BadRequest, Conflict, NotFound
from parish_authz import get_db
from parish_authz.errors import PermissionDenied, RoleInUse, RoleNotFound
from parish_authz.models.authz import Permission
from parish_authz.services import roles as role_admin
from parish_authz.services.registry import RoleRegistry
from tests.test_utils_seed import ensure_user, grant_role, seed_roles


@pytest.fixture()
def actors():
    seed_roles()
    root = ensure_user('root@test.local', roles=['super-admin'])
    admin = ensure_user('admin@test.local', roles=['admin'])
    viewer = ensure_user('viewer@test.local', roles=['viewer'])
    return {'root': root.id, 'admin': admin.id, 'viewer': viewer.id}


def _registry():
    return RoleRegistry.load(get_db())


def test_create_role_below_own_level(actors):
    role = role_admin.create_role(actors['root'], 'catechist', 2, ['access members', 'access sacraments'])
    assert role.display_name == 'Catechist'
    reg = _registry()
    assert reg.get_clearance('catechist') == 2
    assert reg.get_role('catechist').permissions == frozenset({'access members', 'access sacraments'})


def test_create_role_guards(actors):
    # admin lacks 'manage roles'
    with pytest.raises(PermissionDenied):
        role_admin.create_role(actors['admin'], 'catechist', 1)
    with pytest.raises(Conflict):
        role_admin.create_role(actors['root'], 'viewer', 1)
    with pytest.raises(BadRequest):
        role_admin.create_role(actors['root'], 'catechist', 1, ['fly'])
    with pytest.raises(BadRequest):
        role_admin.create_role(actors['root'], 'catechist', -1)
    assert 'catechist' not in _registry()


def test_role_manager_cannot_create_at_or_above_own_level(actors):
    role_admin.create_role(actors['root'], 'registrar', 3, ['manage roles', 'access roles'])
    registrar = ensure_user('registrar@test.local', roles=['registrar'])
    with pytest.raises(PermissionDenied):
        role_admin.create_role(registrar.id, 'deacon', 3)
    role_admin.create_role(registrar.id, 'deacon', 2)
    with pytest.raises(PermissionDenied):
        role_admin.update_role_permissions(registrar.id, 'admin', [])
    with pytest.raises(PermissionDenied):
        role_admin.update_role(registrar.id, 'deacon', clearance_level=3)


def test_bypass_role_is_immutable(actors):
    with pytest.raises(PermissionDenied):
        role_admin.update_role_permissions(actors['root'], 'super-admin', [])
    with pytest.raises(PermissionDenied):
        role_admin.delete_role(actors['root'], 'super-admin')
    with pytest.raises(RoleNotFound):
        role_admin.delete_role(actors['root'], 'ghost')


def test_update_role_permissions_changes_capabilities(actors, resolver):
    assert resolver.resolve_capabilities(actors['viewer'])['can_access_tithes'] is False
    out = role_admin.update_role_permissions(actors['root'], 'viewer', ['access members', 'access tithes'])
    assert out == {'name': 'viewer', 'permissions': ['access members', 'access tithes']}
    caps = resolver.resolve_capabilities(actors['viewer'])
    assert caps['can_access_tithes'] is True
    assert caps['can_access_dashboard'] is False


def test_update_role_level_and_label(actors):
    role_admin.update_role(actors['root'], 'viewer', clearance_level=0, display_name='Read Only')
    reg = _registry()
    assert reg.get_clearance('viewer') == 0
    assert reg.get_role('viewer').label == 'Read Only'


def test_delete_role_in_use_then_free(actors):
    role_admin.create_role(actors['root'], 'choir', 1, ['access activities'])
    grant_role(actors['viewer'], 'choir')
    with pytest.raises(RoleInUse):
        role_admin.delete_role(actors['root'], 'choir')
    role_admin.delete_role(actors['root'], 'treasurer')
    assert 'treasurer' not in _registry()


def test_delete_role_requires_delete_capability(actors):
    with pytest.raises(PermissionDenied):
        role_admin.delete_role(actors['admin'], 'viewer')


def test_permission_catalog_changes(actors, resolver):
    perm = role_admin.add_permission(actors['root'], 'access cemetery')
    assert perm.name == 'access cemetery'
    assert 'access cemetery' in _registry().bypass_role.permissions
    with pytest.raises(Conflict):
        role_admin.add_permission(actors['root'], 'access cemetery')
    with pytest.raises(PermissionDenied):
        role_admin.add_permission(actors['admin'], 'access crypt')

    assert resolver.resolve_capabilities(actors['admin'])['can_export_reports'] is True
    out = role_admin.remove_permission(actors['root'], 'export reports')
    assert out == {'name': 'export reports', 'status': 'deleted'}
    reg = _registry()
    assert 'export reports' not in reg.permissions
    assert 'export reports' not in reg.get_role('admin').permissions
    assert resolver.resolve_capabilities(actors['admin'])['can_export_reports'] is False
    assert get_db().execute(select(Permission).where(Permission.name == 'export reports')).scalar_one_or_none() is None
    with pytest.raises(NotFound):
        role_admin.remove_permission(actors['root'], 'export reports')
