"""
Access control: password hashing, bearer tokens and role gating.

The order and inventory services only ever see the resolved `Identity`;
credential handling stays in this module.
"""
import os
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

import jwt
from fastapi import Depends, Header

from database import get_db, find_by_id, now_utc
from errors import AccessDenied, Unauthorized, ValidationError
from schemas import RoleName

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
TOKEN_ALGORITHM = "HS256"
TOKEN_EXPIRES_MINUTES = int(os.getenv("TOKEN_EXPIRES_MINUTES", 60))
PBKDF2_ITERATIONS = 100_000


@dataclass(frozen=True)
class Identity:
    user_id: str
    username: str
    role: RoleName


def hash_password(pw: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", pw.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(pw: str, password_hash: Optional[str]) -> bool:
    if not password_hash or "$" not in password_hash:
        return False
    salt, expected = password_hash.split("$", 1)
    digest = hashlib.pbkdf2_hmac("sha256", pw.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return hmac.compare_digest(digest.hex(), expected)


def generate_token(user: Dict[str, Any], role: RoleName) -> str:
    payload = {
        "id": str(user["_id"]),
        "role": RoleName(role).value,
        "exp": now_utc() + timedelta(minutes=TOKEN_EXPIRES_MINUTES),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=TOKEN_ALGORITHM)


def resolve_role(database, role_id: Optional[str]) -> Optional[RoleName]:
    if not role_id:
        return None
    role = find_by_id(database, "role", role_id)
    if not role:
        return None
    try:
        return RoleName(role["name"])
    except ValueError:
        return None


def authenticate(database, credential: Optional[str]) -> Identity:
    """Resolve a bearer token to the identity and role of a stored user.

    Raises Unauthorized when the token is missing, malformed, expired, or
    names a user (or role) that no longer exists.
    """
    if not credential:
        raise Unauthorized("No token")
    try:
        payload = jwt.decode(credential, SECRET_KEY, algorithms=[TOKEN_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")

    user_id = payload.get("id")
    try:
        user = find_by_id(database, "user", user_id)
    except ValidationError:
        user = None
    if not user:
        raise Unauthorized("Invalid user")
    role = resolve_role(database, user.get("role_id"))
    if role is None:
        logger.warning("User %s has no valid role", user_id)
        raise Unauthorized("Invalid user")
    return Identity(user_id=str(user["_id"]), username=user["username"], role=role)


def authorize(role: RoleName, allowed_roles: Iterable[RoleName]) -> bool:
    """An empty allow-list admits every authenticated role."""
    allowed = set(allowed_roles)
    return not allowed or role in allowed


def current_identity(authorization: Optional[str] = Header(None), database=Depends(get_db)) -> Identity:
    credential = None
    if authorization:
        credential = authorization.replace("Bearer ", "", 1).strip()
    return authenticate(database, credential)


def require_roles(*roles: RoleName):
    def dependency(identity: Identity = Depends(current_identity)) -> Identity:
        if not authorize(identity.role, roles):
            raise AccessDenied("Access denied")
        return identity
    return dependency
