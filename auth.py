import hashlib
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from database import Store, get_store
from errors import Forbidden

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "7"))
PBKDF2_ITERATIONS = 200_000
security = HTTPBearer(auto_error=False)


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt.hex()}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        scheme, iterations, salt_hex, digest_hex = password_hash.split("$")
        if scheme != "pbkdf2_sha256":
            return False
        digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt_hex), int(iterations))
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=JWT_EXPIRE_DAYS)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def role_of(user: dict) -> Optional[str]:
    return (user.get("profile") or {}).get("role")


def public_profile(user: dict) -> dict:
    """User document without the password hash, ready for serialization."""
    doc = dict(user)
    doc.pop("password_hash", None)
    doc["role"] = role_of(user)
    return doc


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    store: Store = Depends(get_store),
) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authorized, no token")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = store.find_by_id("user", user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_role(role: str):
    """Dependency factory that only lets users with ``role`` through."""

    def checker(user: dict = Depends(get_current_user)) -> dict:
        if role_of(user) != role:
            raise Forbidden(f"User role {role_of(user)} is not authorized to access this route")
        return user

    return checker
