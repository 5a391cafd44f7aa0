"""
Service-to-service key for collaborator callbacks (the payment gateway's
status callback) and for outgoing calls to the catalog, address, payment and
notification services.

A missing INTERNAL_API_KEY falls back to a development default and warns
loudly instead of failing at import time.
"""
import os
import secrets
import warnings

INTERNAL_API_KEY: str = os.getenv("INTERNAL_API_KEY", "")

if not INTERNAL_API_KEY:
    warnings.warn(
        "INTERNAL_API_KEY is not set. Using an insecure default. "
        "Set this env var in production!",
        stacklevel=2,
    )
    INTERNAL_API_KEY = "insecure-default-change-me"

INTERNAL_API_HEADERS = {"X-Internal-API-Key": INTERNAL_API_KEY}


def verify_api_key(provided_key: str) -> bool:
    """Constant-time comparison against the configured internal key."""
    if not provided_key:
        return False
    return secrets.compare_digest(str(provided_key), str(INTERNAL_API_KEY))
