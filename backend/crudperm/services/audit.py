from __future__ import annotations
from typing import Any, Dict, Optional
from flask_jwt_extended import get_jwt
from crudperm import get_db
from crudperm.models.audit import AuditLog


def add_audit(action: str, entity: Optional[str] = None, entity_id: Optional[str] = None, meta: Optional[Dict[str, Any]] = None):
    """Persist an audit log entry within the current DB session.

    Parameters:
      action: short action code e.g. CRUD_PERM.REPLACE, SUPPLIER.CREATE
      entity: optional entity name (CrudPermission, Supplier, User)
      entity_id: optional primary key string
      meta: additional JSON-safe dictionary (will be shallow copied)
    """
    session = get_db()
    claims = {}
    try:
        claims = get_jwt() or {}
    except RuntimeError:
        pass  # no JWT context (e.g. seed scripts) – keep empty
    actor = claims.get('id_user')
    log = AuditLog(
        actor_user_id=int(actor) if actor is not None else 0,
        actor_role=claims.get('role'),
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        meta=dict(meta or {}),
    )
    session.add(log)
    # No commit here; caller's transaction boundary controls durability.
    return log
