"""
Request-scoped caller identity.

The session itself belongs to the external auth provider; we only verify
the HS256 bearer token it issues and expose the subject as the user id.
"""
import logging
from typing import Optional

import jwt
from fastapi import Depends, Request
from pydantic import BaseModel, Field

from src.config import Settings

logger = logging.getLogger(__name__)


class RequestContext(BaseModel):
    user_id: Optional[str] = None
    claims: dict = Field(default_factory=dict)

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


def decode_token(token: str, secret: str) -> Optional[dict]:
    if not token or not secret:
        return None
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired session token.")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected invalid session token: {e}")
        return None


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_request_context(request: Request, settings: Settings = Depends(get_settings)) -> RequestContext:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return RequestContext()

    claims = decode_token(token.strip(), settings.auth_jwt_secret)
    if not claims or not claims.get("sub"):
        return RequestContext()
    return RequestContext(user_id=str(claims["sub"]), claims=claims)
