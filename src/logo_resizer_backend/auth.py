"""
Optional bearer-token check for the resize endpoint.

When ``auth.required`` is enabled every /resize request must carry an
``Authorization: Bearer <jwt>`` header signed with the configured secret. The
token is treated as an opaque credential: only its signature and standard
time claims are verified.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from omegaconf import DictConfig

from .errors import AuthRejected, ServerMisconfigured

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def verify_token(token: Optional[str], secret: Optional[str], algorithms: list[str]) -> Dict[str, Any]:
    """
    Verify a bearer token and return its claims.

    Raises:
        ServerMisconfigured: If no secret is configured
        AuthRejected: If the token is missing, malformed, expired or badly signed
    """
    if not secret:
        raise ServerMisconfigured()
    if not token:
        raise AuthRejected("Missing bearer token")
    try:
        return jwt.decode(token, secret, algorithms=algorithms)
    except jwt.PyJWTError as exc:
        raise AuthRejected("Invalid token") from exc


def require_bearer_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[Dict[str, Any]]:
    config: DictConfig = request.app.state.config
    if not config.auth.required:
        return None

    token = credentials.credentials if credentials and credentials.scheme.lower() == "bearer" else None
    try:
        return verify_token(token, config.auth.secret, list(config.auth.algorithms))
    except AuthRejected as exc:
        if exc.status_code >= 500:
            logger.error("%s", exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
