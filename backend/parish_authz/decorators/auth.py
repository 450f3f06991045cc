from functools import wraps
from flask_jwt_extended import verify_jwt_in_request, get_jwt_identity
from parish_authz import get_capability_resolver
from parish_authz.errors import PermissionDenied


def current_actor_id():
    ident = get_jwt_identity()
    try:
        return int(ident) if ident is not None else None
    except (TypeError, ValueError):
        return None


def require_capability(*names: str):
    """Gate a view on capabilities resolved (and cached) for the JWT identity.

    Capabilities are looked up on every request rather than read from token claims, so role
    changes take effect as soon as the cache entry is evicted.
    """
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            if not get_capability_resolver().has_capabilities(current_actor_id(), *names):
                raise PermissionDenied('Missing permission')
            return fn(*args, **kwargs)
        return wrapper
    return outer
