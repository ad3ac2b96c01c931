import asyncio
from crudperm import get_db
from crudperm.constants.permissions import PAGES, ROLES, ROLE_DEFAULTS
from crudperm.models.audit import AuditLog
from crudperm.services.resolver import role_key
from tests.test_utils_seed import ensure_user, seed_permissions, auth_headers


def _check(client, headers, page, action):
    resp = client.get('/permissions/check', query_string={'page': page, 'action': action}, headers=headers)
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()


def test_check_requires_token(client):
    resp = client.get('/permissions/check', query_string={'page': 'ready', 'action': 'create'})
    assert resp.status_code == 401


def test_check_uses_fallback_when_table_empty(app_context):
    client = app_context.test_client()
    staff = auth_headers(ensure_user('staff_check@example.com', 'staff'))
    body = _check(client, staff, 'ready', 'create')
    assert body['allowed'] is True
    assert body['loaded'] is False
    assert _check(client, staff, 'ready', 'edit')['allowed'] is False
    finance = auth_headers(ensure_user('finance_check@example.com', 'finance'))
    assert _check(client, finance, 'ready', 'create')['allowed'] is False


def test_check_rejects_unknown_action(app_context):
    client = app_context.test_client()
    headers = auth_headers(ensure_user('staff_badaction@example.com', 'staff'))
    resp = client.get('/permissions/check', query_string={'page': 'ready', 'action': 'approve'}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()['error']['status'] == 400


def test_check_reads_live_row_after_reload(app_context, resolver):
    client = app_context.test_client()
    seed_permissions([{'role': 'staff', 'page': 'ready', 'can_create': False}])
    asyncio.run(resolver.reload_permissions())
    headers = auth_headers(ensure_user('staff_live@example.com', 'staff'))
    body = _check(client, headers, 'ready', 'create')
    assert body['allowed'] is False
    assert body['loaded'] is True


def test_admin_passes_every_check(app_context):
    client = app_context.test_client()
    seed_permissions([{'role': 'admin', 'page': 'users', 'can_delete': False}])
    headers = auth_headers(ensure_user('admin_check@example.com', 'admin'))
    for page in ('users', 'gudang', 'anything'):
        assert _check(client, headers, page, 'delete')['allowed'] is True


def test_page_flags_are_authoritative(app_context):
    client = app_context.test_client()
    seed_permissions([{'role': 'finance', 'page': 'analysis', 'can_create': True, 'can_edit': True}])
    headers = auth_headers(ensure_user('finance_flags@example.com', 'finance'))
    body = client.get('/permissions/pages/analysis', headers=headers).get_json()
    assert body['can_create'] is True
    assert body['can_edit'] is True
    assert body['can_delete'] is False
    assert body['access'] is True
    ready = client.get('/permissions/pages/ready', headers=headers).get_json()
    assert (ready['can_create'], ready['can_edit'], ready['can_delete']) == (False, False, False)
    assert ready['access'] is False


def test_admin_only_page_needs_admin_role(app_context):
    client = app_context.test_client()
    seed_permissions([{'role': 'pic_branch', 'page': 'permissions-db', 'can_create': True, 'can_edit': True}])
    pic = auth_headers(ensure_user('pic_adminpage@example.com', 'pic_branch'))
    body = client.get('/permissions/pages/permissions-db', headers=pic).get_json()
    assert body['can_create'] is True
    assert body['access'] is False
    admin = auth_headers(ensure_user('admin_adminpage@example.com', 'super admin'))
    assert client.get('/permissions/pages/permissions-db', headers=admin).get_json()['access'] is True


def test_snapshot_endpoint(app_context, resolver):
    client = app_context.test_client()
    seed_permissions([{'role': 'staff', 'page': 'ready', 'can_create': False}])
    asyncio.run(resolver.reload_permissions())
    headers = auth_headers(ensure_user('staff_snapshot@example.com', 'staff'))
    body = client.get('/permissions/snapshot', headers=headers).get_json()
    assert body['loaded'] is True
    assert body['refreshed_at']
    assert set(body['pages']) == set(PAGES)
    assert body['pages']['ready']['can_create'] is False
    assert body['pages']['gudang']['can_create'] is True  # fallback


def test_reload_requires_admin_and_is_audited(app_context):
    client = app_context.test_client()
    staff = auth_headers(ensure_user('staff_reload@example.com', 'staff'))
    assert client.post('/permissions/reload', headers=staff).status_code == 403
    admin = auth_headers(ensure_user('admin_reload@example.com', 'admin'))
    resp = client.post('/permissions/reload', headers=admin)
    assert resp.status_code == 200
    assert resp.get_json()['loaded'] is False
    assert resp.get_json()['reloaded'] is False
    seed_permissions([{'role': 'staff', 'page': 'esb', 'can_create': True}])
    body = client.post('/permissions/reload', headers=admin).get_json()
    assert body['loaded'] is True
    assert body['size'] == 3
    assert body['reloaded'] is True
    assert body['in_flight'] is False
    status = client.get('/permissions/status', headers=staff).get_json()
    assert status['size'] == 3 and status['ttl'] == 300
    logs = get_db().query(AuditLog).filter(AuditLog.action=='CRUD_PERM.RELOAD').all()
    assert logs and logs[-1].actor_role == 'admin'


def test_replace_matrix_reloads_cache(app_context, resolver):
    client = app_context.test_client()
    admin = auth_headers(ensure_user('admin_matrix@example.com', 'super admin'))
    staff = auth_headers(ensure_user('staff_matrix@example.com', 'staff'))
    assert _check(client, staff, 'ready', 'create')['allowed'] is True
    payload = {'permissions': [
        {'role': 'staff', 'page': 'ready', 'can_create': False, 'can_edit': False, 'can_delete': False},
        {'role': 'finance', 'page': 'ready', 'can_create': True, 'can_edit': False, 'can_delete': False},
    ]}
    resp = client.put('/permissions/crud', json=payload, headers=admin)
    assert resp.status_code == 200, resp.get_json()
    assert resp.get_json() == {'count': 2, 'reloaded': True}
    assert _check(client, staff, 'ready', 'create')['allowed'] is False
    assert resolver.cache.get(role_key('finance', 'ready', 'create')) is True

    matrix = client.get('/permissions/crud', headers=admin).get_json()
    assert len(matrix['data']) == len(ROLES) * len(PAGES)
    by_key = {(r['role'], r['page']): r for r in matrix['data']}
    assert by_key[('staff', 'ready')]['source'] == 'table'
    assert by_key[('staff', 'ready')]['can_create'] is False
    assert by_key[('staff', 'gudang')]['source'] == 'default'
    assert by_key[('staff', 'gudang')]['can_create'] is ROLE_DEFAULTS['staff']['create']
    audit = get_db().query(AuditLog).filter(AuditLog.action=='CRUD_PERM.REPLACE').order_by(AuditLog.id.desc()).first()
    assert audit.meta == {'count': 2}


def test_replace_matrix_fills_missing_flags_from_role_defaults(app_context, resolver):
    client = app_context.test_client()
    admin = auth_headers(ensure_user('admin_partial@example.com', 'admin'))
    resp = client.put('/permissions/crud', json={'permissions': [{'role': 'pic_branch', 'page': 'recipes'}]}, headers=admin)
    assert resp.status_code == 200
    assert resolver.cache.get(role_key('pic_branch', 'recipes', 'edit')) is True
    assert resolver.cache.get(role_key('pic_branch', 'recipes', 'delete')) is False


def test_replace_matrix_validation(app_context):
    client = app_context.test_client()
    admin = auth_headers(ensure_user('admin_validate@example.com', 'admin'))
    assert client.put('/permissions/crud', json={}, headers=admin).status_code == 400
    dup = {'permissions': [{'role': 'staff', 'page': 'ready'}, {'role': 'staff', 'page': 'ready'}]}
    assert client.put('/permissions/crud', json=dup, headers=admin).status_code == 400
    bad = {'permissions': [{'role': 'staff', 'page': 'ready', 'can_create': 'yes'}]}
    resp = client.put('/permissions/crud', json=bad, headers=admin)
    assert resp.status_code == 400
    assert 'can_create' in resp.get_json()['error']['detail']
    staff = auth_headers(ensure_user('staff_validate@example.com', 'staff'))
    ok = {'permissions': [{'role': 'staff', 'page': 'ready', 'can_create': True, 'can_edit': True, 'can_delete': True}]}
    assert client.put('/permissions/crud', json=ok, headers=staff).status_code == 403


def test_default_matrix_endpoint(app_context):
    client = app_context.test_client()
    admin = auth_headers(ensure_user('admin_defaults@example.com', 'admin'))
    body = client.get('/permissions/crud/defaults', headers=admin).get_json()
    assert body['roles'] == ROLES
    finance_rows = [r for r in body['data'] if r['role'] == 'finance']
    assert len(finance_rows) == len(PAGES)
    assert not any(r['can_create'] or r['can_edit'] or r['can_delete'] for r in finance_rows)


def test_user_override_lifecycle(app_context):
    client = app_context.test_client()
    admin = auth_headers(ensure_user('admin_override@example.com', 'admin'))
    target = ensure_user('staff_override@example.com', 'staff')
    other = auth_headers(ensure_user('staff_other@example.com', 'staff'))
    target_headers = auth_headers(target)
    seed_permissions([{'role': 'staff', 'page': 'gudang', 'can_create': False}])

    resp = client.post('/permissions/overrides', json={
        'user_id': target.id, 'page': 'gudang', 'can_create': True, 'can_edit': False, 'can_delete': False,
    }, headers=admin)
    assert resp.status_code == 201, resp.get_json()
    override = resp.get_json()
    assert override['reloaded'] is True
    assert override['role'] == 'staff' and override['user_id'] == target.id
    assert _check(client, target_headers, 'gudang', 'create')['allowed'] is True
    assert _check(client, other, 'gudang', 'create')['allowed'] is False

    resp = client.post('/permissions/overrides', json={
        'user_id': target.id, 'page': 'gudang', 'can_create': True, 'can_edit': True, 'can_delete': False,
    }, headers=admin)
    assert resp.status_code == 200
    assert resp.get_json()['id'] == override['id']
    assert _check(client, target_headers, 'gudang', 'edit')['allowed'] is True

    listed = client.get('/permissions/overrides', query_string={'user_id': target.id}, headers=admin).get_json()
    assert [r['id'] for r in listed['data']] == [override['id']]

    deleted = client.delete(f"/permissions/overrides/{override['id']}", headers=admin)
    assert deleted.status_code == 200
    assert deleted.get_json()['reloaded'] is True
    assert _check(client, target_headers, 'gudang', 'create')['allowed'] is False
    assert client.delete(f"/permissions/overrides/{override['id']}", headers=admin).status_code == 404
    assert get_db().query(AuditLog).filter(AuditLog.action=='CRUD_PERM.OVERRIDE.DELETE').count() >= 1


def test_override_validation(app_context):
    client = app_context.test_client()
    admin = auth_headers(ensure_user('admin_override_val@example.com', 'admin'))
    missing_user = {'user_id': 999999, 'page': 'ready', 'can_create': True, 'can_edit': True, 'can_delete': True}
    assert client.post('/permissions/overrides', json=missing_user, headers=admin).status_code == 404
    assert client.post('/permissions/overrides', json={'page': 'ready'}, headers=admin).status_code == 400
    target = ensure_user('staff_override_val@example.com', 'staff')
    no_flags = {'user_id': target.id, 'page': 'ready'}
    assert client.post('/permissions/overrides', json=no_flags, headers=admin).status_code == 400
