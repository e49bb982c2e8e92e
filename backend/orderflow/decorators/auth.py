from functools import wraps
from flask import abort
from flask_jwt_extended import verify_jwt_in_request, get_jwt


def require_roles(*roles: str):
    """Verify the bearer token; with roles given, the token's role claim must be one of them."""
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            if roles and get_jwt().get('role') not in roles:
                abort(403, description='Role not permitted')
            return fn(*args, **kwargs)
        return wrapper
    return outer
