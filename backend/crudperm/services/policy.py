from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar
from flask import current_app
from flask_jwt_extended import get_jwt
from crudperm.constants.permissions import ACTIONS, ADMIN_ONLY_PAGES
from crudperm.services.columns import ColumnPermissionResolver
from crudperm.services.resolver import PermissionResolver

T = TypeVar('T')


@dataclass(frozen=True)
class Actor:
    user_id: Optional[int]
    role: str


def current_actor() -> Actor:
    """Acting user from the verified JWT claims (no database access)."""
    claims = get_jwt()
    raw_id = claims.get('id_user')
    return Actor(user_id=int(raw_id) if raw_id is not None else None, role=claims.get('role') or '')


def get_resolver() -> PermissionResolver:
    return current_app.extensions['permission_resolver']


def get_column_resolver() -> ColumnPermissionResolver:
    return current_app.extensions['column_resolver']


def run_async(coro: Awaitable[T]) -> T:
    """Drive a resolver coroutine from a synchronous Flask view."""
    return asyncio.run(coro)


def is_admin(actor: Actor) -> bool:
    return get_resolver().policy.is_admin(actor.role)


async def _crud_flags(resolver: PermissionResolver, actor: Actor, page: str) -> Dict[str, bool]:
    flags = {}
    for action in ACTIONS:
        flags[f'can_{action}'] = await resolver.can_perform_action(actor.role, page, action, actor.user_id)
    return flags


def crud_flags(actor: Actor, page: str) -> Dict[str, bool]:
    """Authoritative create/edit/delete flags for one page."""
    return run_async(_crud_flags(get_resolver(), actor, page))


def has_page_access(actor: Actor, page: str, flags: Optional[Dict[str, bool]] = None) -> bool:
    """A page is reachable when any of its actions is allowed; admin-only pages need an admin role."""
    if page in ADMIN_ONLY_PAGES:
        return is_admin(actor)
    if flags is None:
        flags = crud_flags(actor, page)
    return any(flags.values())


def check_action(actor: Actor, page: str, action: str) -> bool:
    return run_async(get_resolver().can_perform_action(actor.role, page, action, actor.user_id))


async def _column_view(resolver: ColumnPermissionResolver, role: str, page: str, requested: List[str]):
    allowed = await resolver.allowed_columns(role, page)
    visible = await resolver.visible_columns(role, page, requested)
    return allowed, visible


def column_view(actor: Actor, page: str, requested: List[str]) -> Tuple[Optional[List[str]], List[str]]:
    """Allowed columns for a page (None = no access) and which of ``requested`` are visible."""
    return run_async(_column_view(get_column_resolver(), actor.role, page, requested))


def can_access_page(actor: Actor, page: str) -> bool:
    return run_async(get_column_resolver().can_access_page(actor.role, page))
