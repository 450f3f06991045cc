from parish_authz.errors import ASSIGN_DENIED
from tests.test_utils_seed import auth_headers, ensure_user, role_names_of, seed_roles


def _seed_people():
    seed_roles()
    ensure_user('root@test.local', roles=['super-admin'])
    admin = ensure_user('admin@test.local', roles=['admin'])
    viewer = ensure_user('viewer@test.local', roles=['viewer'])
    return admin.id, viewer.id


def test_login_and_me(client):
    _seed_people()
    bad = client.post('/iam/auth/login', json={'email': 'admin@test.local', 'password': 'nope'})
    assert bad.status_code == 401
    missing = client.post('/iam/auth/login', json={'email': 'admin@test.local'})
    assert missing.status_code == 400
    h = auth_headers(client, 'admin@test.local')
    me = client.get('/iam/auth/me', headers=h).get_json()
    assert me['email'] == 'admin@test.local'
    assert me['roles'] == ['admin']
    assert me['last_login_at'] is not None
    assert me['capabilities']['create_user'] is True
    assert me['capabilities']['manage_roles'] is False


def test_deactivated_user_cannot_login(client):
    seed_roles()
    ensure_user('gone@test.local', roles=['viewer'], is_active=False)
    resp = client.post('/iam/auth/login', json={'email': 'gone@test.local', 'password': 'pw'})
    assert resp.status_code == 403


def test_endpoints_require_token(client):
    assert client.get('/iam/me/capabilities').status_code == 401
    assert client.get('/iam/users').status_code == 401


def test_capabilities_and_assignable_roles(client):
    _seed_people()
    h = auth_headers(client, 'admin@test.local')
    caps = client.get('/iam/me/capabilities', headers=h).get_json()
    assert caps['assign_roles'] is True and caps['delete_user'] is False
    assignable = client.get('/iam/roles/assignable', headers=h).get_json()['data']
    assert [r['name'] for r in assignable] == ['manager', 'secretary', 'staff', 'treasurer', 'viewer']


def test_assign_and_revoke_over_http(client):
    admin_id, viewer_id = _seed_people()
    h = auth_headers(client, 'admin@test.local')
    resp = client.put(f'/iam/users/{viewer_id}/roles/manager', headers=h)
    assert resp.status_code == 200
    assert resp.get_json()['assigned'] is True
    assert role_names_of(viewer_id) == {'viewer', 'manager'}
    resp = client.delete(f'/iam/users/{viewer_id}/roles/manager', headers=h)
    assert resp.get_json()['revoked'] is True


def test_escalation_denied_without_leaking(client):
    _, viewer_id = _seed_people()
    h = auth_headers(client, 'admin@test.local')
    resp = client.put(f'/iam/users/{viewer_id}/roles/super-admin', headers=h)
    assert resp.status_code == 403
    err = resp.get_json()['error']
    assert err['detail'] == ASSIGN_DENIED
    assert err['kind'] == 'PermissionDenied'
    assert 'level' not in err['detail'] and 'clearance' not in err['detail']


def test_unknown_role_rejected(client):
    _, viewer_id = _seed_people()
    h = auth_headers(client, 'root@test.local')
    resp = client.put(f'/iam/users/{viewer_id}/roles/nonexistent-role', headers=h)
    assert resp.status_code == 400
    assert resp.get_json()['error']['kind'] == 'InvalidRole'


def test_viewer_lacks_capability(client):
    _, viewer_id = _seed_people()
    h = auth_headers(client, 'viewer@test.local')
    resp = client.get('/iam/users', headers=h)
    assert resp.status_code == 403
    assert resp.get_json()['error']['detail'] == 'Missing permission'


def test_last_admin_protection_over_http(client):
    _seed_people()
    h = auth_headers(client, 'root@test.local')
    root_id = ensure_user('root@test.local').id
    resp = client.delete(f'/iam/users/{root_id}/roles/super-admin', headers=h)
    assert resp.status_code == 409
    assert resp.get_json()['error']['kind'] == 'LastAdminProtection'
    resp = client.delete(f'/iam/users/{root_id}', headers=h)
    assert resp.status_code == 409


def test_user_lifecycle_over_http(client):
    admin_id, viewer_id = _seed_people()
    h = auth_headers(client, 'admin@test.local')
    resp = client.post('/iam/users', json={'email': 'clerk@test.local', 'name': 'Clerk', 'password': 'pw', 'roles': ['staff']}, headers=h)
    assert resp.status_code == 201
    clerk = resp.get_json()
    assert clerk['roles'] == ['staff'] and clerk['created_by_id'] == admin_id
    assert client.post('/iam/users', json={'email': 'clerk@test.local', 'name': 'Dup'}, headers=h).status_code == 409
    assert client.post(f"/iam/users/{clerk['id']}/deactivate", headers=h).get_json()['is_active'] is False
    assert client.post(f"/iam/users/{clerk['id']}/activate", headers=h).get_json()['is_active'] is True
    assert client.post(f'/iam/users/{admin_id}/deactivate', headers=h).status_code == 400
    # admin lacks 'delete users'
    assert client.delete(f"/iam/users/{clerk['id']}", headers=h).status_code == 403
    root_h = auth_headers(client, 'root@test.local')
    resp = client.delete(f"/iam/users/{clerk['id']}", headers=root_h)
    assert resp.get_json() == {'user_id': clerk['id'], 'status': 'deleted'}


def test_list_users_and_roles_paginated(client):
    _seed_people()
    h = auth_headers(client, 'admin@test.local')
    body = client.get('/iam/users?limit=2', headers=h).get_json()
    assert body['pagination'] == {'total': 3, 'limit': 2, 'offset': 0, 'returned': 2}
    roles = client.get('/iam/roles', headers=h).get_json()
    assert roles['pagination']['total'] == 7
    by_name = {r['name']: r for r in roles['data']}
    assert by_name['admin']['users_count'] == 1
    assert by_name['super-admin']['is_bypass'] is True
    assert client.get('/iam/users?limit=abc', headers=h).status_code == 400


def test_role_admin_over_http(client):
    _seed_people()
    h = auth_headers(client, 'root@test.local')
    resp = client.post('/iam/roles', json={'name': 'catechist', 'clearance_level': 2, 'permissions': ['access members']}, headers=h)
    assert resp.status_code == 201
    resp = client.patch('/iam/roles/catechist', json={'display_name': 'Catechist Team'}, headers=h)
    assert resp.status_code == 200
    resp = client.put('/iam/roles/catechist/permissions', json={'permissions': ['access sacraments']}, headers=h)
    assert resp.get_json()['permissions'] == ['access sacraments']
    assert client.delete('/iam/roles/catechist', headers=h).status_code == 200
    assert client.post('/iam/permissions', json={'name': 'access cemetery'}, headers=h).status_code == 201
    assert client.delete('/iam/permissions/access%20cemetery', headers=h).status_code == 200
    admin_h = auth_headers(client, 'admin@test.local')
    assert client.post('/iam/roles', json={'name': 'x', 'clearance_level': 1}, headers=admin_h).status_code == 403


def test_update_user_over_http(client):
    admin_id, viewer_id = _seed_people()
    h = auth_headers(client, 'admin@test.local')
    resp = client.patch(f'/iam/users/{viewer_id}', json={'name': 'Vera', 'roles': ['staff']}, headers=h)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['name'] == 'Vera' and body['roles'] == ['staff']
    assert role_names_of(viewer_id) == {'staff'}
    resp = client.patch(f'/iam/users/{viewer_id}', json={'roles': ['admin']}, headers=h)
    assert resp.status_code == 403
    assert resp.get_json()['error']['detail'] == ASSIGN_DENIED
    assert client.patch(f'/iam/users/{viewer_id}', json={'email': 'admin@test.local'}, headers=h).status_code == 409
    assert client.patch(f'/iam/users/{viewer_id}', json={'roles': 'staff'}, headers=h).status_code == 400
    assert client.patch(f'/iam/users/{viewer_id}', json={'name': ''}, headers=h).status_code == 400
    assert client.patch('/iam/users/4242', json={'name': 'X'}, headers=h).status_code == 404
    viewer_h = auth_headers(client, 'viewer@test.local')
    assert client.patch(f'/iam/users/{admin_id}', json={'name': 'X'}, headers=viewer_h).status_code == 403


def test_list_users_filters(client):
    admin_id, viewer_id = _seed_people()
    ensure_user('vincent@parish.local', roles=['viewer'], name='Vincent', is_active=False)
    h = auth_headers(client, 'admin@test.local')

    def emails(query):
        resp = client.get(f'/iam/users?{query}', headers=h)
        assert resp.status_code == 200
        return sorted(u['email'] for u in resp.get_json()['data'])

    assert emails('role=viewer') == ['vincent@parish.local', 'viewer@test.local']
    assert emails('role=viewer&status=active') == ['viewer@test.local']
    assert emails('status=inactive') == ['vincent@parish.local']
    assert emails('search=VINC') == ['vincent@parish.local']
    assert emails('search=test.local&role=admin') == ['admin@test.local']
    assert emails('role=treasurer') == []
    body = client.get('/iam/users?role=viewer&limit=1', headers=h).get_json()
    assert body['pagination'] == {'total': 2, 'limit': 1, 'offset': 0, 'returned': 1}
    assert client.get('/iam/users?status=gone', headers=h).status_code == 400
