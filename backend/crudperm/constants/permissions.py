"""Central definitions of roles, pages and the compiled-in CRUD permission matrix.

FALLBACK_PERMISSIONS is the degraded-mode policy used when the crud_permissions
table is empty or unreachable. Keep it at least as restrictive as the live table
for non-administrative roles.
"""
from __future__ import annotations
from typing import Dict, List, Tuple

ACTIONS: Tuple[str, ...] = ('create', 'edit', 'delete')

ADMIN_ROLES: Tuple[str, ...] = ('super admin', 'admin')

ROLES: List[str] = ['super admin', 'admin', 'finance', 'pic_branch', 'staff']

PAGES: List[str] = [
    'ready', 'gudang', 'produksi', 'produksi_detail', 'analysis', 'esb',
    'product_name', 'categories', 'recipes', 'supplier', 'branches',
    'users', 'stock_opname', 'product_settings', 'permissions-db',
]

# Pages reserved for administrative roles whatever the table says
ADMIN_ONLY_PAGES = frozenset({'permissions-db', 'crud-permissions'})

# Per-role triple used to pre-fill the admin matrix and "reset to defaults"
ROLE_DEFAULTS: Dict[str, Dict[str, bool]] = {
    'super admin': {'create': True, 'edit': True, 'delete': True},
    'admin': {'create': True, 'edit': True, 'delete': True},
    'finance': {'create': False, 'edit': False, 'delete': False},
    'pic_branch': {'create': True, 'edit': True, 'delete': False},
    'staff': {'create': True, 'edit': False, 'delete': False},
}

DENY_ALL: Dict[str, bool] = {'create': False, 'edit': False, 'delete': False}


def default_flags(role: str) -> Dict[str, bool]:
    return dict(ROLE_DEFAULTS.get(role, DENY_ALL))


def _uniform(flags: Dict[str, bool], **overrides: Dict[str, bool]) -> Dict[str, Dict[str, bool]]:
    matrix = {page: dict(flags) for page in PAGES}
    for page, page_flags in overrides.items():
        matrix[page] = dict(page_flags)
    return matrix


FALLBACK_PERMISSIONS: Dict[str, Dict[str, Dict[str, bool]]] = {
    'super admin': _uniform(ROLE_DEFAULTS['super admin']),
    'admin': _uniform(ROLE_DEFAULTS['admin']),
    'finance': _uniform(DENY_ALL),
    'pic_branch': _uniform(ROLE_DEFAULTS['pic_branch'], gudang=DENY_ALL),
    'staff': _uniform(
        DENY_ALL,
        ready={'create': True, 'edit': False, 'delete': False},
        gudang={'create': True, 'edit': False, 'delete': False},
        produksi={'create': True, 'edit': False, 'delete': False},
    ),
}


def build_default_matrix() -> List[Dict[str, object]]:
    """Role x page rows carrying ROLE_DEFAULTS, in ROLES/PAGES order."""
    rows: List[Dict[str, object]] = []
    for role in ROLES:
        flags = default_flags(role)
        for page in PAGES:
            rows.append({
                'role': role,
                'page': page,
                'can_create': flags['create'],
                'can_edit': flags['edit'],
                'can_delete': flags['delete'],
            })
    return rows


# --- Page access and visible columns (user_permissions table) ---

WILDCARD_COLUMN = '*'

COLUMN_PAGES: List[str] = [
    'ready', 'produksi', 'produksi_detail', 'gudang', 'analysis', 'product_settings',
    'stock_opname_batch', 'esb', 'product_name', 'categories', 'recipes', 'supplier',
    'branches', 'users', 'permissions-db', 'crud-permissions', 'audit-log',
]

# Reachable by every signed-in user
OPEN_PAGES = frozenset({'', 'dashboard'})

ROLE_ALIASES: Dict[str, str] = {'pic': 'pic_branch'}

# Pages each role sees with every column when user_permissions has nothing for it
DEFAULT_PAGE_ACCESS: Dict[str, List[str]] = {
    'super admin': list(COLUMN_PAGES),
    'admin': list(COLUMN_PAGES),
    'finance': ['ready', 'produksi', 'produksi_detail', 'gudang', 'analysis', 'stock_opname_batch', 'esb', 'users'],
    'pic_branch': ['ready', 'produksi', 'gudang', 'stock_opname_batch', 'esb'],
    'staff': ['ready', 'produksi', 'stock_opname_batch', 'esb'],
}


def build_default_page_rows() -> List[Dict[str, object]]:
    """user_permissions rows carrying DEFAULT_PAGE_ACCESS, in ROLES order."""
    return [
        {'role': role, 'page': page, 'columns': [WILDCARD_COLUMN], 'can_access': True}
        for role in ROLES
        for page in DEFAULT_PAGE_ACCESS.get(role, [])
    ]
