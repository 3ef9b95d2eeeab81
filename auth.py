"""Admin gate for the back-office routes.

Users log in with email/password and get an API token back; admin routes take
it as ``Authorization: Bearer <token>``. Whether a user is an admin is a flag
on the user document, set at registration for emails listed in ADMIN_EMAILS.
"""
import hashlib
import hmac
import logging
import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from database import get_db

logger = logging.getLogger(__name__)

ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}
PBKDF2_ROUNDS = 200_000

_bearer = HTTPBearer(auto_error=False)


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt), PBKDF2_ROUNDS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    salt, _, _ = password_hash.partition("$")
    return hmac.compare_digest(hash_password(password, salt), password_hash)


def new_api_token() -> str:
    return secrets.token_urlsafe(32)


def is_admin(user: Optional[dict]) -> bool:
    return bool(user and user.get("is_admin"))


def current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
                 db=Depends(get_db)) -> dict:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Unauthenticated.")
    user = db["user"].find_one({"api_token": credentials.credentials})
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthenticated.")
    return user


def require_admin(user: dict = Depends(current_user)) -> dict:
    if not is_admin(user):
        logger.warning("Non-admin %s tried an admin route", user.get("email"))
        raise HTTPException(status_code=403, detail="Unauthorized.")
    return user
