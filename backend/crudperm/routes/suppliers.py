from __future__ import annotations
from flask import Blueprint, request, abort
from flask_jwt_extended import jwt_required
from sqlalchemy import select
from crudperm import get_db
from crudperm.models.supplier import Supplier
from crudperm.decorators.auth import require_action
from crudperm.decorators.audit import audit_log
from crudperm.services.policy import current_actor
from crudperm.utils.listing import apply_pagination, make_list_response

suppliers_bp = Blueprint('suppliers', __name__)

PAGE = 'supplier'
EDITABLE_FIELDS = ('contact_name', 'phone', 'address')


@suppliers_bp.get('')
@jwt_required()
def list_suppliers():
    session = get_db()
    q = session.query(Supplier)
    name = request.args.get('name')
    if name:
        q = q.filter(Supplier.name.ilike(f'%{name}%'))
    paged_q, total, limit, offset = apply_pagination(q.order_by(Supplier.name.asc(), Supplier.id.asc()))
    rows = paged_q.all()
    latest_ts = max((s.updated_at for s in rows if s.updated_at), default=None)
    return make_list_response([_supplier_json(s) for s in rows], total, limit, offset, latest_ts)


@suppliers_bp.get('/<int:supplier_id>')
@jwt_required()
def get_supplier(supplier_id: int):
    return _supplier_json(_get_or_404(supplier_id))


@suppliers_bp.post('')
@require_action(PAGE, 'create')
@audit_log('SUPPLIER.CREATE', entity='Supplier', entity_id_key='id', meta_keys=['name'])
def create_supplier():
    session = get_db()
    data = request.json or {}
    name = (data.get('name') or '').strip()
    if not name:
        abort(400, description='name required')
    if session.execute(select(Supplier).where(Supplier.name==name)).scalar_one_or_none():
        abort(400, description='supplier name exists')
    actor = current_actor()
    s = Supplier(name=name, created_by=actor.user_id or 0, **{k: data.get(k) for k in EDITABLE_FIELDS})
    session.add(s); session.commit()
    return _supplier_json(s), 201


@suppliers_bp.put('/<int:supplier_id>')
@require_action(PAGE, 'edit')
@audit_log('SUPPLIER.UPDATE', entity='Supplier', entity_id_key='id', meta_keys=['name'])
def update_supplier(supplier_id: int):
    session = get_db()
    s = _get_or_404(supplier_id)
    data = request.json or {}
    if 'name' in data:
        name = (data['name'] or '').strip()
        if not name:
            abort(400, description='name cannot be empty')
        dup = session.execute(select(Supplier).where(Supplier.name==name, Supplier.id!=s.id)).scalar_one_or_none()
        if dup:
            abort(400, description='supplier name exists')
        s.name = name
    for field in EDITABLE_FIELDS:
        if field in data:
            setattr(s, field, data[field])
    session.commit()
    return _supplier_json(s)


@suppliers_bp.delete('/<int:supplier_id>')
@require_action(PAGE, 'delete')
@audit_log('SUPPLIER.DELETE', entity='Supplier', entity_id_arg='supplier_id')
def delete_supplier(supplier_id: int):
    session = get_db()
    s = _get_or_404(supplier_id)
    session.delete(s); session.commit()
    return {'id': supplier_id, 'deleted': True}


def _get_or_404(supplier_id: int) -> Supplier:
    s = get_db().execute(select(Supplier).where(Supplier.id==supplier_id)).scalar_one_or_none()
    if not s:
        abort(404)
    return s


def _supplier_json(s: Supplier):
    return {
        'id': s.id,
        'name': s.name,
        'contact_name': s.contact_name,
        'phone': s.phone,
        'address': s.address,
        'created_by': s.created_by,
    }
