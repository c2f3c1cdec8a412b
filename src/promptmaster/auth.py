"""Password hashing, session tokens and FastAPI principal dependencies."""

import hashlib
import hmac
import logging
import os
from datetime import datetime, timedelta
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings
from .errors import AuthenticationError
from .policy import GUEST, Capability, Principal, Role, require

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

PBKDF2_ITERATIONS = 120_000


def hash_password(password: str) -> str:
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt.hex()}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        scheme, iterations, salt, expected = password_hash.split("$")
    except (AttributeError, ValueError):
        return False
    if scheme != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode(), bytes.fromhex(salt), int(iterations)
    )
    return hmac.compare_digest(digest.hex(), expected)


def issue_token(principal: Principal) -> str:
    payload = {
        "sub": principal.id,
        "name": principal.name,
        "role": principal.role.value,
        "first_login": principal.is_first_login,
        "exp": datetime.utcnow() + timedelta(days=settings.token_expire_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> Principal:
    """Decode a session token; anything short of a fully valid token is rejected."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "sub"]},
        )
        role = Role(payload["role"])
        name = payload["name"]
    except (jwt.PyJWTError, KeyError, ValueError, TypeError) as exc:
        logger.info("rejected session token: %s", exc)
        raise AuthenticationError("Invalid token") from exc

    if role is Role.GUEST or not isinstance(name, str):
        raise AuthenticationError("Invalid token")
    return Principal(
        id=str(payload["sub"]),
        name=name,
        role=role,
        is_first_login=bool(payload.get("first_login", False)),
    )


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    if credentials is None:
        raise AuthenticationError("Authentication required")
    return verify_token(credentials.credentials)


def get_optional_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """Treat a request without a token as the guest; a bad token is still rejected."""
    if credentials is None:
        return GUEST
    return verify_token(credentials.credentials)


def requires(capability: Capability):
    """Route guard: an authenticated principal holding ``capability``."""

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        require(principal, capability)
        return principal

    return dependency
