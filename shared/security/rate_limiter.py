from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from .jwt_handler import verify_access_token


def user_id_or_ip(request: Request) -> str:
    """
    Key function for SlowAPI: one budget per student, whichever device they
    order from. Anonymous callers are limited by client address.
    """
    # get_current_actor has already run for authenticated routes
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"

    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        claims = verify_access_token(token)
        if claims and claims.get("sub"):
            return f"user:{claims['sub']}"

    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=user_id_or_ip, headers_enabled=False)
