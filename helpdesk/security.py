"""Credentials and the authorization gate.

Every request resolves its bearer token to a ``User`` through
``get_current_user``; routes then declare the capability they need with
``require("...")`` so a caller outside the allowed roles is rejected before
the handler body runs.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from fastapi import Depends, Header
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session

from helpdesk.config import get_settings
from helpdesk.database import get_db
from helpdesk.errors import AuthenticationError, AuthorizationError
from helpdesk.models import User


logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 260_000

ALL_ROLES = frozenset({"user", "admin", "superadmin"})
STAFF = frozenset({"admin", "superadmin"})
SUPERADMIN = frozenset({"superadmin"})

CAPABILITIES: dict[str, frozenset[str]] = {
    "tickets.create": ALL_ROLES,
    "tickets.create_on_behalf": STAFF,
    "tickets.list_all": STAFF,
    "tickets.list_own": ALL_ROLES,
    "tickets.update_status": STAFF,
    "tickets.admin_attachments": STAFF,
    "tickets.delete": SUPERADMIN,
    "reports.knowledge_base": STAFF,
    "knowledge_base.suggest": ALL_ROLES,
    "admin_profiles.view": STAFF,
    "admin_profiles.self": frozenset({"admin"}),
    "admin_profiles.manage": SUPERADMIN,
    "departments.manage": SUPERADMIN,
    "users.manage": SUPERADMIN,
    "companies.manage": SUPERADMIN,
    "profile.self": ALL_ROLES,
}

ROLE_HOME = {
    "user": "/dashboard",
    "admin": "/admin",
    "superadmin": "/super-admin",
}
GUEST_ONLY_PATHS = ("/login", "/register", "/forgot-password", "/reset-password")
ROLE_RESTRICTED_PATHS = {
    "/dashboard": frozenset({"user"}),
    "/admin": frozenset({"admin"}),
    "/super-admin": frozenset({"superadmin"}),
}

# jti values of tokens revoked by logout or consumed by a password reset
revoked_tokens: set[str] = set()


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        scheme, iterations, salt, expected = password_hash.split("$", 3)
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


def _encode(user: User, token_type: str, expires_minutes: int) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user.user_id),
        "role": user.role,
        "type": token_type,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(user: User) -> str:
    return _encode(user, "access", get_settings().access_token_expire_minutes)


def create_reset_token(user: User) -> str:
    return _encode(user, "reset", get_settings().reset_token_expire_minutes)


def decode_token(token: str, expected_type: str = "access") -> dict:
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise AuthenticationError("Session expired. Please login again.")
    except JWTError:
        raise AuthenticationError("Invalid session. Please login again.")

    if claims.get("type") != expected_type or not claims.get("sub"):
        raise AuthenticationError("Invalid session. Please login again.")
    if claims.get("jti") in revoked_tokens:
        raise AuthenticationError("Session has been logged out. Please login again.")
    return claims


def revoke_token(claims: dict) -> None:
    jti = claims.get("jti")
    if jti:
        revoked_tokens.add(jti)


def bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Authentication required. Please login again.")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise AuthenticationError("Authentication required. Please login again.")
    return token


def check_account_status(user: User) -> None:
    if user.status == "suspended":
        raise AuthorizationError("Your account has been suspended. Please contact administrator.")
    if user.status == "frozen":
        raise AuthorizationError("Your account has been frozen. Please contact administrator.")


def get_token_claims(authorization: str | None = Header(default=None)) -> dict:
    return decode_token(bearer_token(authorization))


def get_current_user(
    claims: dict = Depends(get_token_claims),
    db: Session = Depends(get_db),
) -> User:
    try:
        user_id = int(claims["sub"])
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid session. Please login again.")

    user = db.get(User, user_id)
    if not user:
        logger.debug("Token for missing user %s rejected", user_id)
        raise AuthenticationError("User not found. Please login again.")
    check_account_status(user)
    return user


def has_capability(user: User, capability: str) -> bool:
    return user.role in CAPABILITIES[capability]


def ensure_capability(user: User, capability: str) -> None:
    if not has_capability(user, capability):
        logger.debug("User %s (%s) denied %s", user.user_id, user.role, capability)
        raise AuthorizationError("You do not have permission to perform this action.")


def require(capability: str):
    if capability not in CAPABILITIES:
        raise KeyError(f"Unknown capability: {capability}")

    def dependency(user: User = Depends(get_current_user)) -> User:
        ensure_capability(user, capability)
        return user

    return dependency


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


def resolve_navigation(role: str | None, path: str) -> str | None:
    """Where the client should go instead of ``path``, or None to stay.

    This only shapes navigation; the API still enforces access on every call.
    """
    path = "/" + path.strip().lstrip("/")
    if any(_matches(path, guest) for guest in GUEST_ONLY_PATHS):
        return ROLE_HOME.get(role) if role else None

    if role is None:
        return "/login"

    if path == "/":
        return ROLE_HOME.get(role, "/login")

    for prefix, roles in ROLE_RESTRICTED_PATHS.items():
        if _matches(path, prefix) and role not in roles:
            return ROLE_HOME.get(role, "/login")
    return None
