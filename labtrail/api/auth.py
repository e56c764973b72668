"""
Bearer-token identity for the FastAPI layer.

Tokens are issued by the identity provider; this module only verifies them
and turns their claims into an Identity. `create_access_token` exists for
operators and tests.
"""
from datetime import datetime, timedelta
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from labtrail.access.identity import Identity
from labtrail.config import JWT_ALGORITHM, JWT_SECRET_KEY, TOKEN_EXPIRY_HOURS
from labtrail.errors import NotAuthenticated

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(identity: Identity, expires_hours: int = TOKEN_EXPIRY_HOURS) -> str:
    """Generate a signed token carrying the identity's id and role."""
    payload = {
        "sub": identity.id,
        "role": identity.role.value,
        "iat": datetime.utcnow(),
        "exp": datetime.utcnow() + timedelta(hours=expires_hours),
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Identity:
    """Decode a token into an Identity, or raise NotAuthenticated."""
    try:
        claims = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        return Identity.from_claims(claims)
    except jwt.ExpiredSignatureError:
        raise NotAuthenticated("Token has expired")
    except (jwt.InvalidTokenError, KeyError, ValueError):
        raise NotAuthenticated("Invalid authentication token")


def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[Identity]:
    """
    Dependency: the caller's Identity, or None for an anonymous request.

    Whether anonymous callers may proceed is the access guard's decision,
    not this dependency's.
    """
    if credentials is None:
        return None
    return verify_token(credentials.credentials)
