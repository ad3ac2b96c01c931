from __future__ import annotations
from typing import Any, Dict, List, Optional
from flask import Blueprint, request, abort
from flask_jwt_extended import jwt_required
from sqlalchemy import select, delete
from crudperm import get_db
from crudperm.models.authz import CrudPermission, User, UserPermission
from crudperm.constants.permissions import (
    ACTIONS, COLUMN_PAGES, PAGES, ROLES, WILDCARD_COLUMN, build_default_matrix, build_default_page_rows, default_flags,
)
from crudperm.decorators.auth import require_admin
from crudperm.decorators.audit import audit_log
from crudperm.services.policy import (
    can_access_page, column_view, current_actor, crud_flags, get_column_resolver, get_resolver, has_page_access, run_async,
)

perm_bp = Blueprint('permissions', __name__)

FLAG_FIELDS = ('can_create', 'can_edit', 'can_delete')


# --- Checks (any signed-in user) ---

@perm_bp.get('/check')
@jwt_required()
def check():
    """Render-time gate: cache + fallback only, never waits on the database."""
    page = request.args.get('page'); action = request.args.get('action')
    if not page or action not in ACTIONS:
        abort(400, description=f'page and action ({"/".join(ACTIONS)}) required')
    actor = current_actor()
    resolver = get_resolver()
    allowed = resolver.can_perform_action_sync(actor.role, page, action, actor.user_id)
    return {'page': page, 'action': action, 'allowed': allowed, 'loaded': resolver.are_permissions_loaded()}


@perm_bp.get('/pages/<page>')
@jwt_required()
def page_flags(page: str):
    actor = current_actor()
    flags = crud_flags(actor, page)
    return {'page': page, 'role': actor.role, 'access': has_page_access(actor, page, flags), **flags}


@perm_bp.get('/snapshot')
@jwt_required()
def snapshot():
    actor = current_actor()
    snap = get_resolver().snapshot()
    pages = {
        page: {f'can_{a}': snap.allows(actor.role, page, a, actor.user_id) for a in ACTIONS}
        for page in PAGES
    }
    return {
        'role': actor.role,
        'loaded': len(snap) > 0,
        'refreshed_at': snap.refreshed_at.isoformat() if snap.refreshed_at else None,
        'pages': pages,
    }


@perm_bp.get('/status')
@jwt_required()
def status():
    return _status_json()


@perm_bp.post('/reload')
@require_admin()
@audit_log('CRUD_PERM.RELOAD', entity='CrudPermission', meta_keys=['size'])
def reload():
    loaded = run_async(get_resolver().reload_permissions())
    return {**_status_json(), 'reloaded': loaded}


# --- Administration of the crud_permissions table ---

@perm_bp.get('/crud')
@require_admin()
def get_matrix():
    """Role x page matrix: stored role rows, defaults for the missing pairs."""
    session = get_db()
    stored = session.execute(
        select(CrudPermission).where(CrudPermission.user_id.is_(None)).order_by(CrudPermission.role, CrudPermission.page)
    ).scalars().all()
    by_key = {(p.role, p.page): p for p in stored}
    rows: List[Dict[str, Any]] = []
    for default in build_default_matrix():
        row = by_key.pop((default['role'], default['page']), None)
        rows.append(_crud_json(row) if row else {**default, 'id': None, 'source': 'default'})
    # roles/pages outside the known lists are still shown
    rows.extend(_crud_json(p) for p in by_key.values())
    return {'roles': ROLES, 'pages': PAGES, 'data': rows}


@perm_bp.get('/crud/defaults')
@require_admin()
def get_default_matrix():
    return {'roles': ROLES, 'pages': PAGES, 'data': build_default_matrix()}


@perm_bp.put('/crud')
@require_admin()
@audit_log('CRUD_PERM.REPLACE', entity='CrudPermission', meta_keys=['count'])
def replace_matrix():
    """Replace every role-level row, then reload the cache."""
    data = request.json or {}
    items = data.get('permissions')
    if not isinstance(items, list) or not items:
        abort(400, description='permissions list required')
    parsed = []
    seen = set()
    for item in items:
        role, page, flags = _parse_row(item)
        if (role, page) in seen:
            abort(400, description=f'duplicate entry for {role}/{page}')
        seen.add((role, page))
        parsed.append(CrudPermission(role=role, page=page, **flags))
    session = get_db()
    session.execute(delete(CrudPermission).where(CrudPermission.user_id.is_(None)))
    session.add_all(parsed)
    session.commit()
    loaded = run_async(get_resolver().reload_permissions())
    return {'count': len(parsed), 'reloaded': loaded}


@perm_bp.get('/overrides')
@require_admin()
def list_overrides():
    session = get_db()
    q = select(CrudPermission).where(CrudPermission.user_id.is_not(None))
    user_id = request.args.get('user_id')
    if user_id:
        try:
            q = q.where(CrudPermission.user_id==int(user_id))
        except ValueError:
            abort(400, description='user_id must be int')
    rows = session.execute(q.order_by(CrudPermission.user_id, CrudPermission.page)).scalars().all()
    return {'data': [_crud_json(r) for r in rows]}


@perm_bp.post('/overrides')
@require_admin()
@audit_log('CRUD_PERM.OVERRIDE.SET', entity='CrudPermission', entity_id_key='id', meta_keys=['user_id', 'page', *FLAG_FIELDS])
def set_override():
    data = request.json or {}
    try:
        user_id = int(data.get('user_id'))
    except (TypeError, ValueError):
        abort(400, description='user_id required')
    page = data.get('page')
    if not page or not isinstance(page, str):
        abort(400, description='page required')
    flags = _parse_flags(data)
    session = get_db()
    user = session.execute(select(User).where(User.id==user_id)).scalar_one_or_none()
    if not user:
        abort(404, description='user not found')
    row = session.execute(
        select(CrudPermission).where(CrudPermission.user_id==user_id, CrudPermission.page==page)
    ).scalar_one_or_none()
    created = row is None
    if created:
        row = CrudPermission(user_id=user_id, page=page, role=user.role, **flags)
        session.add(row)
    else:
        row.role = user.role
        for k, v in flags.items():
            setattr(row, k, v)
    session.commit()
    loaded = run_async(get_resolver().reload_permissions())
    return {**_crud_json(row), 'reloaded': loaded}, 201 if created else 200


@perm_bp.delete('/overrides/<int:override_id>')
@require_admin()
@audit_log('CRUD_PERM.OVERRIDE.DELETE', entity='CrudPermission', entity_id_arg='override_id')
def delete_override(override_id: int):
    session = get_db()
    row = session.execute(
        select(CrudPermission).where(CrudPermission.id==override_id, CrudPermission.user_id.is_not(None))
    ).scalar_one_or_none()
    if not row:
        abort(404)
    session.delete(row)
    session.commit()
    loaded = run_async(get_resolver().reload_permissions())
    return {'id': override_id, 'deleted': True, 'reloaded': loaded}


# --- Page access and visible columns (user_permissions) ---

@perm_bp.get('/access/<path:page>')
@jwt_required()
def page_access(page: str):
    actor = current_actor()
    return {'page': page, 'role': actor.role, 'access': can_access_page(actor, page)}


@perm_bp.get('/columns/<page>')
@jwt_required()
def page_columns(page: str):
    """Columns the actor may see on a page; ``?columns=a,b`` filters a concrete list."""
    actor = current_actor()
    requested = [c.strip() for c in (request.args.get('columns') or '').split(',') if c.strip()]
    allowed, visible = column_view(actor, page, requested)
    return {
        'page': page,
        'role': actor.role,
        'access': allowed is not None,
        'columns': allowed or [],
        'visible': visible,
    }


@perm_bp.get('/db')
@require_admin()
def list_page_permissions():
    q = select(UserPermission)
    role = request.args.get('role')
    if role:
        q = q.where(UserPermission.role==role)
    rows = get_db().execute(q.order_by(UserPermission.role, UserPermission.page)).scalars().all()
    return {'roles': ROLES, 'pages': COLUMN_PAGES, 'data': [_page_json(r) for r in rows]}


@perm_bp.get('/db/defaults')
@require_admin()
def get_default_page_permissions():
    return {'roles': ROLES, 'pages': COLUMN_PAGES, 'data': build_default_page_rows()}


@perm_bp.put('/db')
@require_admin()
@audit_log('PAGE_PERM.SET', entity='UserPermission', entity_id_key='id', meta_keys=['role', 'page', 'columns', 'can_access'])
def set_page_permission():
    data = request.json or {}
    role, page = _parse_role_page(data)
    columns = data.get('columns', [WILDCARD_COLUMN])
    if not isinstance(columns, list) or not all(isinstance(c, str) and c for c in columns):
        abort(400, description='columns must be a list of column names')
    can_access = data.get('can_access', True)
    if not isinstance(can_access, bool):
        abort(400, description='can_access must be boolean')
    row, created = _upsert_page_permission(role, page, columns, can_access)
    return _page_json(row), 201 if created else 200


@perm_bp.post('/db/toggle')
@require_admin()
@audit_log('PAGE_PERM.TOGGLE', entity='UserPermission', entity_id_key='id', meta_keys=['role', 'page', 'can_access'])
def toggle_page_permission():
    """Flip page access for a role; the row ends up showing every column."""
    role, page = _parse_role_page(request.json or {})
    existing = get_db().execute(
        select(UserPermission).where(UserPermission.role==role, UserPermission.page==page)
    ).scalar_one_or_none()
    can_access = not (existing.can_access if existing else False)
    row, created = _upsert_page_permission(role, page, [WILDCARD_COLUMN], can_access)
    return _page_json(row), 201 if created else 200


def _upsert_page_permission(role: str, page: str, columns: List[str], can_access: bool):
    session = get_db()
    row = session.execute(
        select(UserPermission).where(UserPermission.role==role, UserPermission.page==page)
    ).scalar_one_or_none()
    created = row is None
    if created:
        row = UserPermission(role=role, page=page)
        session.add(row)
    row.columns = list(columns)
    row.can_access = can_access
    session.commit()
    get_column_resolver().clear()
    return row, created


def _page_json(p: UserPermission):
    return {
        'id': p.id,
        'role': p.role,
        'page': p.page,
        'columns': list(p.columns or []),
        'can_access': p.can_access,
    }


def _status_json():
    resolver = get_resolver()
    refreshed = resolver.cache.refreshed_at
    return {
        'loaded': resolver.are_permissions_loaded(),
        'size': len(resolver.cache),
        'refreshed_at': refreshed.isoformat() if refreshed else None,
        'in_flight': resolver.reload_in_flight,
        'ttl': resolver.ttl,
    }


def _parse_flags(item: Dict[str, Any], defaults: Optional[Dict[str, bool]] = None) -> Dict[str, bool]:
    flags = {}
    for field in FLAG_FIELDS:
        value = item.get(field, None)
        if value is None and defaults is not None:
            value = defaults[field[len('can_'):]]
        if not isinstance(value, bool):
            abort(400, description=f'{field} must be boolean')
        flags[field] = value
    return flags


def _parse_role_page(item: Any):
    if not isinstance(item, dict):
        abort(400, description='each permission must be an object')
    role = item.get('role'); page = item.get('page')
    if not role or not isinstance(role, str) or not page or not isinstance(page, str):
        abort(400, description='role and page required')
    return role, page


def _parse_row(item: Any):
    role, page = _parse_role_page(item)
    return role, page, _parse_flags(item, default_flags(role))


def _crud_json(p: CrudPermission):
    return {
        'id': p.id,
        'user_id': p.user_id,
        'role': p.role,
        'page': p.page,
        'can_create': p.can_create,
        'can_edit': p.can_edit,
        'can_delete': p.can_delete,
        'source': 'table',
    }
