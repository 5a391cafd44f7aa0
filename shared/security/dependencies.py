from fastapi import Depends, HTTPException, status, Request, WebSocket
from fastapi.security import OAuth2PasswordBearer, APIKeyHeader
from .jwt_handler import verify_access_token
from .api_key import verify_api_key
from .actors import Actor, ActorRole

# Defines the expected header format (Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

# Defines the expected internal service header
api_key_header = APIKeyHeader(name="X-Internal-API-Key", auto_error=False)


def actor_from_claims(payload: dict) -> Actor | None:
    """Maps verified token claims onto an Actor. None when the claims don't describe one."""
    user_id = payload.get("sub")
    if user_id is None:
        return None
    try:
        role = ActorRole(payload.get("role", ActorRole.STUDENT.value))
    except ValueError:
        return None
    # The system actor only exists inside the process
    if role is ActorRole.SYSTEM:
        return None

    restaurant_id = payload.get("restaurant_id")
    if restaurant_id is not None:
        try:
            restaurant_id = int(restaurant_id)
        except (TypeError, ValueError):
            return None
    if role is ActorRole.RESTAURANT and restaurant_id is None:
        return None
    return Actor(role=role, id=str(user_id), restaurant_id=restaurant_id)


async def get_current_actor(request: Request, token: str = Depends(oauth2_scheme)) -> Actor:
    """Dependency to validate the JWT and return who is calling."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not token:
        raise credentials_exception

    payload = verify_access_token(token)
    if payload is None:
        raise credentials_exception

    actor = actor_from_claims(payload)
    if actor is None:
        raise credentials_exception

    # Store in request state for downstream use (like rate limiting)
    request.state.user_id = actor.id
    return actor


async def verify_internal_api_key(api_key: str = Depends(api_key_header)) -> bool:
    """Dependency to validate service-to-service internal requests."""
    if not verify_api_key(api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing X-Internal-API-Key header"
        )
    return True


def websocket_actor(websocket: WebSocket) -> Actor | None:
    """
    Resolves the caller of a socket. Browsers cannot set headers on a
    WebSocket, so the token may come as ?token=... instead of a Bearer header.
    """
    token = websocket.query_params.get("token")
    if not token:
        scheme, _, token = websocket.headers.get("Authorization", "").partition(" ")
        if scheme.lower() != "bearer":
            token = None
    if not token:
        return None
    payload = verify_access_token(token)
    if payload is None:
        return None
    return actor_from_claims(payload)
