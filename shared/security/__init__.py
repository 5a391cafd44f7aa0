from .actors import Actor, ActorRole, SYSTEM_ACTOR
from .jwt_handler import create_access_token, verify_access_token
from .api_key import verify_api_key, INTERNAL_API_HEADERS
from .dependencies import get_current_actor, verify_internal_api_key, actor_from_claims, websocket_actor
from .rate_limiter import limiter, user_id_or_ip

__all__ = [
    "Actor",
    "ActorRole",
    "SYSTEM_ACTOR",
    "create_access_token",
    "verify_access_token",
    "verify_api_key",
    "INTERNAL_API_HEADERS",
    "get_current_actor",
    "verify_internal_api_key",
    "actor_from_claims",
    "websocket_actor",
    "limiter",
    "user_id_or_ip"
]
