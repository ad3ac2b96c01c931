from functools import wraps
from flask import abort
from flask_jwt_extended import verify_jwt_in_request
from crudperm.services.policy import current_actor, check_action, is_admin


def require_action(page: str, action: str):
    """Gate a mutating view on the authoritative (cache-refreshing) check."""
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            if not check_action(current_actor(), page, action):
                abort(403, description='Action not permitted')
            return fn(*args, **kwargs)
        return wrapper
    return outer


def require_admin():
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            if not is_admin(current_actor()):
                abort(403, description='Administrator role required')
            return fn(*args, **kwargs)
        return wrapper
    return outer
