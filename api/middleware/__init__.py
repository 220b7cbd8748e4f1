from .auth import get_actor_id, require_actor, require_role
from .logging import RequestLoggingMiddleware
from .rate_limiting import RateLimitMiddleware

__all__ = ["get_actor_id", "require_actor", "require_role", "RequestLoggingMiddleware", "RateLimitMiddleware"]
