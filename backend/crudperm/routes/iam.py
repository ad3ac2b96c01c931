from flask import Blueprint, request, abort
from flask_jwt_extended import create_access_token, jwt_required, get_jwt_identity
from sqlalchemy import select
from crudperm import get_db
from crudperm.models.authz import User
from crudperm.constants.permissions import ROLES
from crudperm.decorators.auth import require_admin
from crudperm.decorators.audit import audit_log
from crudperm.utils.listing import apply_pagination, make_list_response

iam_bp = Blueprint('iam', __name__)


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
        abort(403, description='user inactive')
    # role/id_user claims are the session record every permission check reads
    claims = {
        'role': user.role,
        'id_user': user.id,
        'name': user.name,
    }
    # JWT identity must be a string (flask-jwt-extended v4 requirement)
    token = create_access_token(identity=str(user.id), additional_claims=claims)
    return {'access_token': token}


@iam_bp.get('/auth/me')
@jwt_required()
def me():
    user_id = int(get_jwt_identity())
    session = get_db()
    user = session.execute(select(User).where(User.id==user_id)).scalar_one_or_none()
    if not user:
        abort(404)
    return _user_json(user)


@iam_bp.get('/users')
@require_admin()
def list_users():
    session = get_db()
    q = session.query(User)
    role = request.args.get('role')
    if role:
        q = q.filter(User.role==role)
    paged_q, total, limit, offset = apply_pagination(q.order_by(User.id.asc()))
    rows = paged_q.all()
    latest_ts = max((u.updated_at for u in rows if u.updated_at), default=None)
    return make_list_response([_user_json(u) for u in rows], total, limit, offset, latest_ts)


@iam_bp.post('/users')
@require_admin()
@audit_log('USER.CREATE', entity='User', entity_id_key='id', meta_keys=['email', 'role'])
def create_user():
    data = request.json or {}
    name = data.get('name'); email = data.get('email'); password = data.get('password')
    role = data.get('role') or 'staff'
    if not name or not email or not password:
        abort(400, description='name, email & password required')
    if role not in ROLES:
        abort(400, description=f'Unknown role: {role}')
    session = get_db()
    if session.execute(select(User).where(User.email==email)).scalar_one_or_none():
        abort(400, description='email exists')
    user = User(name=name, email=email, role=role, password_hash='')
    user.set_password(password)
    session.add(user)
    session.commit()
    return _user_json(user), 201


def _user_json(u: User):
    return {
        'id': u.id,
        'name': u.name,
        'email': u.email,
        'role': u.role,
        'is_active': u.is_active,
    }
