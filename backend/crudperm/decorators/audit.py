"""Audit logging decorator for write endpoints.

Usage:

@audit_log('SUPPLIER.CREATE', entity='Supplier', entity_id_key='id', meta_keys=['name'])
def create_supplier():
    ... return {'id': s.id, 'name': s.name}, 201

@audit_log('CRUD_PERM.REPLACE', entity='CrudPermission',
           meta_builder=lambda data, rv, args, kwargs: {'count': data.get('count')})
def replace_matrix(): ...

Parameters:
  action: required audit action code
  entity: optional entity label
  entity_id_key: key in the returned JSON object whose value becomes entity_id
  entity_id_arg: view keyword argument used for entity_id when entity_id_key is absent
  meta_keys: keys projected from the returned JSON into meta
  meta_builder: callable (data, original_return_value, args, kwargs) -> dict; overrides meta_keys

Only successful responses (status < 400) are recorded.
"""
from __future__ import annotations
import logging
from functools import wraps
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from crudperm.services.audit import add_audit
from crudperm import get_db

logger = logging.getLogger(__name__)


def _extract_payload(rv: Any):
    """Return (data, status) for the usual Flask view return shapes."""
    if isinstance(rv, tuple) and rv:
        status = rv[1] if len(rv) > 1 and isinstance(rv[1], int) else 200
        return rv[0], status
    return rv, 200


def audit_log(
    action: str,
    *,
    entity: Optional[str] = None,
    entity_id_key: Optional[str] = None,
    entity_id_arg: Optional[str] = None,
    meta_keys: Optional[Iterable[str]] = None,
    meta_builder: Optional[Callable[[dict, Any, tuple, dict], dict]] = None,
):
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            rv = fn(*args, **kwargs)
            data, status = _extract_payload(rv)
            if status >= 400:
                return rv
            if not isinstance(data, dict):
                data = {}
            entity_id = None
            if entity_id_key and entity_id_key in data:
                entity_id = data.get(entity_id_key)
            elif entity_id_arg and entity_id_arg in kwargs:
                entity_id = kwargs.get(entity_id_arg)
            meta = None
            if meta_builder:
                meta = meta_builder(data, rv, args, kwargs)
            elif meta_keys:
                meta = {k: data.get(k) for k in meta_keys if k in data}
            add_audit(action, entity, entity_id, meta)
            try:
                get_db().commit()
            except SQLAlchemyError:
                # the view's own write is already committed at this point
                logger.exception('Failed to persist audit entry %s', action)
                get_db().rollback()
            return rv
        return wrapper
    return outer
