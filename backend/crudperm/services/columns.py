"""Page access and visible columns from the ``user_permissions`` table.

Same shape as the CRUD resolver: a per-role cache with a freshness window and
a default policy used when the table has no accessible page for a role or
cannot be read. Checks never raise.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from crudperm.constants.permissions import WILDCARD_COLUMN
from crudperm.services.resolver import DEFAULT_TTL_SECONDS, normalize_role

logger = logging.getLogger(__name__)

PagePermissions = Dict[str, List[str]]


@dataclass(frozen=True)
class PageColumns:
    role: str
    page: str
    columns: Tuple[str, ...] = ()
    can_access: bool = True


class ColumnSource(Protocol):
    async def fetch_role(self, role: str) -> List[PageColumns]:
        ...


class ColumnPolicy:
    """Default page access per role plus the pages no table row can open or close."""

    def __init__(
        self,
        admin_roles: Iterable[str],
        defaults: Mapping[str, Iterable[str]],
        admin_only_pages: Iterable[str] = (),
        open_pages: Iterable[str] = (),
        aliases: Optional[Mapping[str, str]] = None,
    ):
        self.admin_roles = frozenset(normalize_role(r) for r in admin_roles)
        self._defaults = {normalize_role(role): list(pages) for role, pages in defaults.items()}
        self.admin_only_pages = frozenset(admin_only_pages)
        self.open_pages = frozenset(open_pages)
        self._aliases = {normalize_role(k): normalize_role(v) for k, v in (aliases or {}).items()}

    def _canonical(self, role: Optional[str]) -> str:
        name = normalize_role(role)
        return self._aliases.get(name, name)

    def is_admin(self, role: Optional[str]) -> bool:
        return self._canonical(role) in self.admin_roles

    def defaults_for(self, role: Optional[str]) -> PagePermissions:
        return {page: [WILDCARD_COLUMN] for page in self._defaults.get(self._canonical(role), [])}


class ColumnPermissionResolver:
    def __init__(
        self,
        source: ColumnSource,
        policy: ColumnPolicy,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.policy = policy
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, PagePermissions]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self):
        """Drop every cached role; call after user_permissions changes."""
        self._entries = {}

    async def get_permissions(self, role: str) -> PagePermissions:
        """page -> allowed columns for a role; only pages with can_access set appear."""
        now = self._clock()
        cached = self._entries.get(role)
        if cached is not None and now - cached[0] <= self.ttl:
            return {page: list(cols) for page, cols in cached[1].items()}
        try:
            rows = await self.source.fetch_role(role)
            permissions = {row.page: list(row.columns or ()) for row in rows if row.can_access}
        except Exception:
            logger.exception('Error fetching page permissions for role %s', role)
            return self.policy.defaults_for(role)
        if not permissions:
            logger.debug('No page permissions stored for role %s, using defaults', role)
            return self.policy.defaults_for(role)
        self._entries[role] = (now, permissions)
        return {page: list(cols) for page, cols in permissions.items()}

    async def can_access_page(self, role: str, page: str) -> bool:
        name = page.strip('/')
        if name in self.policy.admin_only_pages:
            return self.policy.is_admin(role)
        if name in self.policy.open_pages:
            return True
        return name in await self.get_permissions(role)

    async def allowed_columns(self, role: str, page: str) -> Optional[List[str]]:
        """Column list for the page, or None when the role has no access to it."""
        return (await self.get_permissions(role)).get(page)

    async def can_view_column(self, role: str, page: str, column: str) -> bool:
        allowed = await self.allowed_columns(role, page)
        if allowed is None:
            return False
        return WILDCARD_COLUMN in allowed or column in allowed

    async def visible_columns(self, role: str, page: str, all_columns: Sequence[str]) -> List[str]:
        allowed = await self.allowed_columns(role, page)
        if allowed is None:
            return []
        if WILDCARD_COLUMN in allowed:
            return list(all_columns)
        return [c for c in all_columns if c in allowed]


__all__ = ['PageColumns', 'ColumnSource', 'ColumnPolicy', 'ColumnPermissionResolver', 'PagePermissions']
