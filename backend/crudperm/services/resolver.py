"""CRUD permission resolver: in-memory cache over the ``crud_permissions`` table.

Answers "may role R (optionally user U) perform action A on page P?" with
bounded staleness and a static fallback matrix for when the table is empty or
unreachable.

Resolution order (both check variants):
  1. administrative roles always pass
  2. user-scoped cache key  ``user_<id>|<page>|<action>``
  3. role-scoped cache key  ``role:<role>|<page>|<action>``
  4. fallback matrix of the injected DefaultPolicy
  5. deny

Only a reload suspends; every lookup is a plain dict read. Concurrent reload
triggers (tasks on one loop or request threads) collapse into a single fetch
through a non-blocking lock acting as the in-flight flag. An explicit
reload_permissions() waits for that lock instead, so it always fetches rows
written before it was called.
"""
from __future__ import annotations
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Set

from crudperm.constants.permissions import ACTIONS

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
RELOAD_WAIT_INTERVAL = 0.01


def normalize_role(role: Optional[str]) -> str:
    """Canonical role name: lower case, single spaces, ``_`` read as a space."""
    if not role:
        return ''
    return ' '.join(role.replace('_', ' ').lower().split())


def role_key(role: str, page: str, action: str) -> str:
    return f"role:{normalize_role(role)}|{page}|{action}"


def user_key(user_id: int, page: str, action: str) -> str:
    return f"user_{user_id}|{page}|{action}"


@dataclass(frozen=True)
class PermissionRecord:
    role: str
    page: str
    can_create: bool
    can_edit: bool
    can_delete: bool
    user_id: Optional[int] = None

    def allows(self, action: str) -> bool:
        return bool(getattr(self, f"can_{action}"))


class PermissionSource(Protocol):
    async def fetch_all(self) -> List[PermissionRecord]:
        ...


class DefaultPolicy:
    """Admin bypass plus the compiled-in fallback matrix.

    ``matrix`` maps role -> page -> action -> bool; role names are normalised on
    construction so ``pic_branch`` and ``PIC Branch`` hit the same entry.
    """

    def __init__(self, admin_roles: Iterable[str], matrix: Optional[Mapping[str, Mapping[str, Mapping[str, bool]]]] = None):
        self.admin_roles = frozenset(normalize_role(r) for r in admin_roles)
        self._matrix: Dict[str, Mapping[str, Mapping[str, bool]]] = {
            normalize_role(role): pages for role, pages in (matrix or {}).items()
        }

    def is_admin(self, role: Optional[str]) -> bool:
        return normalize_role(role) in self.admin_roles

    def fallback(self, role: Optional[str], page: str, action: str) -> Optional[bool]:
        """Matrix value for the tuple, or None when the matrix has no opinion."""
        pages = self._matrix.get(normalize_role(role))
        if not pages:
            return None
        actions = pages.get(page)
        if not actions or action not in actions:
            return None
        return bool(actions[action])

    def decide(self, role: Optional[str], page: str, action: str) -> bool:
        value = self.fallback(role, page, action)
        return value if value is not None else False


class PermissionCache:
    """Flattened ``scope|page|action -> bool`` map rebuilt wholesale on reload."""

    def __init__(self):
        self._entries: Dict[str, bool] = {}
        self.loaded_at: Optional[float] = None
        self.refreshed_at: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[bool]:
        return self._entries.get(key)

    def is_stale(self, now: float, ttl: float) -> bool:
        return self.loaded_at is None or now - self.loaded_at > ttl

    def replace(self, records: Iterable[PermissionRecord], now: float) -> List[str]:
        """Rebuild from records; returns the keys that granted before and no longer do."""
        entries: Dict[str, bool] = {}
        # user rows first so a role-level row owns the role-scoped value when both exist
        ordered = sorted(records, key=lambda rec: rec.user_id is None)
        for rec in ordered:
            for action in ACTIONS:
                entries[role_key(rec.role, rec.page, action)] = rec.allows(action)
            if rec.user_id is not None:
                for action in ACTIONS:
                    entries[user_key(rec.user_id, rec.page, action)] = rec.allows(action)
        # swap in one assignment so readers on other threads never see a half-built map
        previous = self._entries
        self._entries = entries
        self.loaded_at = now
        self.refreshed_at = datetime.now(timezone.utc)
        return sorted(k for k, v in previous.items() if v and not entries.get(k, False))

    def clear(self):
        self._entries = {}
        self.loaded_at = None
        self.refreshed_at = None

    def snapshot(self) -> Mapping[str, bool]:
        return MappingProxyType(dict(self._entries))


class PermissionSnapshot:
    """Immutable last-known-good view for callers that cannot await."""

    def __init__(self, entries: Mapping[str, bool], policy: DefaultPolicy, refreshed_at: Optional[datetime] = None):
        self._entries = entries
        self._policy = policy
        self.refreshed_at = refreshed_at

    def __len__(self) -> int:
        return len(self._entries)

    def allows(self, role: str, page: str, action: str, user_id: Optional[int] = None) -> bool:
        if self._policy.is_admin(role):
            return True
        if action not in ACTIONS:
            return False
        if user_id is not None:
            hit = self._entries.get(user_key(user_id, page, action))
            if hit is not None:
                return hit
        hit = self._entries.get(role_key(role, page, action))
        if hit is not None:
            return hit
        return self._policy.decide(role, page, action)


class PermissionResolver:
    def __init__(
        self,
        source: PermissionSource,
        policy: DefaultPolicy,
        cache: Optional[PermissionCache] = None,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        background_reload: bool = True,
    ):
        self.source = source
        self.policy = policy
        self.cache = cache if cache is not None else PermissionCache()
        self.ttl = ttl
        self.background_reload = background_reload
        self._clock = clock
        self._reload_lock = threading.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def reload_in_flight(self) -> bool:
        return self._reload_lock.locked()

    async def initialize(self) -> bool:
        """Initial load, owned by application startup."""
        return await self._load()

    def are_permissions_loaded(self) -> bool:
        return len(self.cache) > 0

    def snapshot(self) -> PermissionSnapshot:
        return PermissionSnapshot(self.cache.snapshot(), self.policy, self.cache.refreshed_at)

    async def reload_permissions(self) -> bool:
        """Forced reload after the table was edited.

        Waits for a reload already in flight (its rows may predate the edit),
        then clears the cache and fetches again.
        """
        logger.info('Clearing permission cache and reloading')
        while not self._reload_lock.acquire(blocking=False):
            await asyncio.sleep(RELOAD_WAIT_INTERVAL)
        try:
            self.cache.clear()
            loaded = await self._fetch_into_cache()
        finally:
            self._reload_lock.release()
        logger.info('Permission cache reloaded, size=%d', len(self.cache))
        return loaded

    async def can_perform_action(self, role: str, page: str, action: str, user_id: Optional[int] = None) -> bool:
        """Authoritative check; may fetch the whole table. Never raises."""
        try:
            if self.policy.is_admin(role):
                return True
            if action not in ACTIONS:
                return False
            if self.cache.is_stale(self._clock(), self.ttl):
                await self._load()
            hit = self._lookup(role, page, action, user_id)
            if hit is not None:
                return hit
            # cold start, or a load raced with this check
            await self._load()
            hit = self._lookup(role, page, action, user_id)
            if hit is not None:
                return hit
            return self.policy.decide(role, page, action)
        except Exception:
            logger.exception('Permission check failed for %s/%s/%s, using cached state', role, page, action)
            return self.can_perform_action_sync(role, page, action, user_id)

    def can_perform_action_sync(self, role: str, page: str, action: str, user_id: Optional[int] = None) -> bool:
        """Non-blocking check from cache and fallback matrix only."""
        if self.policy.is_admin(role):
            return True
        if action not in ACTIONS:
            return False
        if not self.are_permissions_loaded():
            self.schedule_reload()
        hit = self._lookup(role, page, action, user_id)
        if hit is not None:
            return hit
        logger.warning('Permission not cached for %s - %s - %s, using fallback', role, page, action)
        return self.policy.decide(role, page, action)

    def schedule_reload(self):
        """Start a reload without waiting for it.

        Uses the running event loop when there is one, otherwise a daemon
        thread. Returns the task/thread, or None when nothing was started.
        """
        if not self.background_reload or self.reload_in_flight:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            task = loop.create_task(self._load())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return task
        thread = threading.Thread(target=self._load_in_thread, name='permission-reload', daemon=True)
        thread.start()
        return thread

    def _load_in_thread(self):
        asyncio.run(self._load())

    def _lookup(self, role: str, page: str, action: str, user_id: Optional[int]) -> Optional[bool]:
        if user_id is not None:
            hit = self.cache.get(user_key(user_id, page, action))
            if hit is not None:
                return hit
        return self.cache.get(role_key(role, page, action))

    async def _load(self) -> bool:
        """Fetch the whole table and rebuild the cache, unless a reload is in flight.

        Returns True when the cache was rebuilt. Errors and empty results leave
        the current cache as it is.
        """
        if not self._reload_lock.acquire(blocking=False):
            logger.debug('Permission reload already in flight')
            return False
        try:
            return await self._fetch_into_cache()
        finally:
            self._reload_lock.release()

    async def _fetch_into_cache(self) -> bool:
        # caller holds _reload_lock
        logger.info('Loading permissions from database')
        try:
            records = list(await self.source.fetch_all())
        except Exception:
            logger.exception('Error loading CRUD permissions')
            return False
        if not records:
            logger.warning('Permissions table returned no rows; keeping %d cached entries', len(self.cache))
            return False
        revoked = self.cache.replace(records, self._clock())
        if revoked:
            logger.warning('Reload revoked %d grant(s): %s', len(revoked), ', '.join(revoked[:20]))
        logger.info('Permissions loaded: %d rows, cache size %d', len(records), len(self.cache))
        return True


__all__ = [
    'DEFAULT_TTL_SECONDS', 'PermissionRecord', 'PermissionSource', 'DefaultPolicy', 'PermissionCache',
    'PermissionSnapshot', 'PermissionResolver', 'normalize_role', 'role_key', 'user_key',
]
