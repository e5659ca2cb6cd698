import hmac
import logging
from typing import Optional, Sequence

from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from refresh_engine.errors import ConfigError, Unauthorized

log = logging.getLogger("mb.api.auth")

# 401s are raised by verify_bearer so they share the JSON error shape
BEARER_SCHEME = HTTPBearer(auto_error=False, description="Subscriber API key")


def verify_bearer(credentials: Optional[HTTPAuthorizationCredentials], api_keys: Sequence[str]) -> str:
    """Check the parsed `Authorization: Bearer <key>` credentials. Returns the matched key."""
    if not api_keys:
        raise ConfigError("SUBSCRIBER_API_KEYS is not configured")

    token = credentials.credentials.strip() if credentials is not None else ""
    if not token:
        raise Unauthorized("missing bearer token")

    for key in api_keys:
        if hmac.compare_digest(token.encode(), key.encode()):
            return key
    log.warning("Rejected subscription call with an unknown API key")
    raise Unauthorized("invalid bearer token")
