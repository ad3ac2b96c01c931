#!/usr/bin/env python
"""Idempotent seed script for the crud_permissions and user_permissions tables.

Usage:
    python backend/scripts/seed_permissions.py                # fill missing role/page rows with defaults
    python backend/scripts/seed_permissions.py --show-matrix  # print role -> page flags after seeding
    python backend/scripts/seed_permissions.py --reset        # overwrite every role-level row with defaults
    python backend/scripts/seed_permissions.py --dry-run      # run logic then rollback (no DB changes)
"""
from __future__ import annotations
import os, sys, argparse, textwrap
from sqlalchemy import select, delete, text

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from crudperm import create_app, get_db  # type: ignore
from crudperm.models.authz import Base, CrudPermission, User, UserPermission
from crudperm.constants.permissions import ROLES, PAGES, build_default_matrix, build_default_page_rows


def ensure_matrix(session, reset: bool = False) -> int:
    if reset:
        session.execute(delete(CrudPermission).where(CrudPermission.user_id.is_(None)))
        existing = set()
    else:
        existing = {
            (p.role, p.page)
            for p in session.execute(select(CrudPermission).where(CrudPermission.user_id.is_(None))).scalars()
        }
    created = 0
    for row in build_default_matrix():
        if (row['role'], row['page']) in existing:
            continue
        session.add(CrudPermission(**row))
        created += 1
    return created


def ensure_page_access(session) -> int:
    existing = {(p.role, p.page) for p in session.execute(select(UserPermission)).scalars()}
    created = 0
    for row in build_default_page_rows():
        if (row['role'], row['page']) in existing:
            continue
        session.add(UserPermission(**row))
        created += 1
    return created


def ensure_initial_admin(session):
    admin_email = os.getenv('SEED_ADMIN_EMAIL', 'admin@example.com')
    existing_admin = session.execute(select(User).where(User.email==admin_email)).scalar_one_or_none()
    if existing_admin:
        return None
    user = User(name='Administrator', email=admin_email, role='super admin', password_hash='')
    user.set_password(os.getenv('SEED_ADMIN_PASSWORD', 'ChangeMe123!'))
    session.add(user)
    print(f"[INFO] Created initial admin user {admin_email} with temporary password.")
    return user


def print_matrix(session):
    rows = session.execute(
        select(CrudPermission).where(CrudPermission.user_id.is_(None)).order_by(CrudPermission.role, CrudPermission.page)
    ).scalars().all()
    if not rows:
        print("[INFO] No permissions present.")
        return
    flag = lambda v: 'Y' if v else '-'
    page_w = max(len(p) for p in PAGES)
    for role in sorted({r.role for r in rows}, key=lambda r: ROLES.index(r) if r in ROLES else len(ROLES)):
        print(f"[{role}]")
        for r in (r for r in rows if r.role == role):
            print(f"  {r.page.ljust(page_w)}  C:{flag(r.can_create)} E:{flag(r.can_edit)} D:{flag(r.can_delete)}")


def parse_args():
    p = argparse.ArgumentParser(
        description="Seed CRUD permissions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""Examples:\n  seed normally: seed_permissions.py\n  dry run: seed_permissions.py --dry-run\n  show matrix: seed_permissions.py --show-matrix\n""")
    )
    p.add_argument('--show-matrix', action='store_true', help='Print the role/page matrix after seeding')
    p.add_argument('--dry-run', action='store_true', help='Rollback after operations (no commit)')
    p.add_argument('--reset', action='store_true', help='Replace all role-level rows with the defaults')
    p.add_argument('--no-admin', action='store_true', help='Do not create the initial admin user')
    return p.parse_args()


def main():
    args = parse_args()
    app = create_app({'PERMISSIONS_PRELOAD': False, 'PERMISSIONS_BACKGROUND_RELOAD': False})
    with app.app_context():
        session = get_db()
        try:
            session.execute(text('SELECT 1 FROM crud_permissions LIMIT 1'))
            session.execute(text('SELECT 1 FROM user_permissions LIMIT 1'))
        except Exception:
            # Auto-create schema for bootstrap; in real env prefer alembic upgrade
            session.rollback()
            Base.metadata.create_all(session.get_bind())
        created = ensure_matrix(session, reset=args.reset)
        pages_created = ensure_page_access(session)
        if not args.no_admin:
            ensure_initial_admin(session)
        session.flush()
        print(f"[INFO] {created} permission rows {'would be ' if args.dry_run else ''}created.")
        print(f"[INFO] {pages_created} page access rows {'would be ' if args.dry_run else ''}created.")
        if args.show_matrix:
            print_matrix(session)
        if args.dry_run:
            session.rollback()
            print("[INFO] Dry run: rolled back.")
        else:
            session.commit()


if __name__ == '__main__':
    main()
