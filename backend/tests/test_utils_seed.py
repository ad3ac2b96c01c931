"""Test seeding utilities shared by the API tests."""
from typing import Dict, Iterable, Optional
from flask_jwt_extended import create_access_token
from crudperm import get_db
from crudperm.models.authz import User, CrudPermission


def ensure_user(email: str, role: str = 'staff', name: Optional[str] = None, password: str = 'pw') -> User:
    session = get_db()
    u = session.query(User).filter_by(email=email).one_or_none()
    if not u:
        u = User(name=name or email.split('@')[0], email=email, role=role, password_hash='')
        u.set_password(password)
        session.add(u); session.commit(); session.refresh(u)
    elif u.role != role:
        u.role = role; session.commit()
    return u


def seed_permissions(rows: Iterable[Dict]) -> None:
    """Insert crud_permissions rows; each dict needs role/page and may carry user_id and flags."""
    session = get_db()
    for row in rows:
        session.add(CrudPermission(
            role=row['role'],
            page=row['page'],
            user_id=row.get('user_id'),
            can_create=row.get('can_create', False),
            can_edit=row.get('can_edit', False),
            can_delete=row.get('can_delete', False),
        ))
    session.commit()


def auth_headers(user: User):
    """Bearer header with the same claims /iam/auth/login issues (needs an app context)."""
    token = create_access_token(identity=str(user.id), additional_claims={
        'role': user.role,
        'id_user': user.id,
        'name': user.name,
    })
    return {'Authorization': f'Bearer {token}'}


def login(client, email: str, password: str = 'pw'):
    resp = client.post('/iam/auth/login', json={'email': email, 'password': password})
    assert resp.status_code == 200, resp.get_json()
    return {'Authorization': f"Bearer {resp.get_json()['access_token']}"}


__all__ = ['ensure_user', 'seed_permissions', 'auth_headers', 'login']
