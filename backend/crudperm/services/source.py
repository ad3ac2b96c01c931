from __future__ import annotations
import asyncio
from typing import Callable, List
from sqlalchemy import select
from sqlalchemy.orm import Session
from crudperm.models.authz import CrudPermission, UserPermission
from crudperm.services.columns import PageColumns
from crudperm.services.resolver import PermissionRecord


class SqlPermissionSource:
    """Reads the whole crud_permissions table in one query.

    The blocking query runs in a worker thread so awaiting callers keep their
    event loop free.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    async def fetch_all(self) -> List[PermissionRecord]:
        return await asyncio.to_thread(self._select_all)

    def _select_all(self) -> List[PermissionRecord]:
        session = self._session_factory()
        try:
            rows = session.execute(select(CrudPermission).order_by(CrudPermission.id.asc())).scalars().all()
            return [
                PermissionRecord(
                    role=r.role,
                    page=r.page,
                    can_create=bool(r.can_create),
                    can_edit=bool(r.can_edit),
                    can_delete=bool(r.can_delete),
                    user_id=r.user_id,
                )
                for r in rows
            ]
        finally:
            session.close()


class SqlColumnPermissionSource:
    """Reads the accessible ``user_permissions`` rows of one role."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    async def fetch_role(self, role: str) -> List[PageColumns]:
        return await asyncio.to_thread(self._select_role, role)

    def _select_role(self, role: str) -> List[PageColumns]:
        session = self._session_factory()
        try:
            rows = session.execute(
                select(UserPermission)
                .where(UserPermission.role==role, UserPermission.can_access.is_(True))
                .order_by(UserPermission.page.asc())
            ).scalars().all()
            return [
                PageColumns(role=r.role, page=r.page, columns=tuple(r.columns or ()), can_access=bool(r.can_access))
                for r in rows
            ]
        finally:
            session.close()
