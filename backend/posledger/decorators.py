# Overview: Request decorators for API routes.

from functools import wraps

from flask import g, request


ACTOR_HEADER = "X-Actor-Id"


def current_actor_id() -> str | None:
    """
    Identity of the staff member behind the request.

    Authentication happens upstream; the gateway forwards the resolved actor
    in X-Actor-Id. Missing or blank means anonymous (None).
    """
    raw = request.headers.get(ACTOR_HEADER, "").strip()
    return raw[:64] or None


def with_actor(f):
    """Resolve the actor for a mutating route and expose it as g.actor_id."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.actor_id = current_actor_id()
        return f(*args, **kwargs)

    return decorated_function
