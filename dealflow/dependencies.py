"""
dependencies.py — Shared FastAPI Dependencies

Bearer-token authentication and role gates. All routers import from
here instead of defining their own auth logic.

Business Rules:
- Tokens are itsdangerous-signed user ids, valid for settings.token_max_age_hours
- require_user raises 401 if the token is missing/invalid, 403 if deactivated
- require_roles(...) raises 403 unless the user holds one of the roles;
  admin always passes
- Cron endpoints also accept the shared X-Cron-Secret header

Called by: all routers
Depends on: models, database, config
"""

import hmac
import logging

from fastapi import Depends, HTTPException, Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy.orm import Session

from .config import settings
from .database import get_db
from .models import User

log = logging.getLogger("dealflow.auth")

_TOKEN_SALT = "dealflow-auth"


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.secret_key, salt=_TOKEN_SALT)


def issue_token(user: User) -> str:
    return _serializer().dumps({"uid": user.id, "role": user.role})


def authenticate(token: str, db: Session) -> User | None:
    """Resolve a bearer token to its user, or None if it is bad or expired."""
    try:
        data = _serializer().loads(token, max_age=settings.token_max_age_hours * 3600)
    except SignatureExpired:
        log.info("Rejected expired token")
        return None
    except BadSignature:
        return None
    return db.get(User, data.get("uid"))


def _bearer(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


# ── Authentication ────────────────────────────────────────────────────


def get_user(request: Request, db: Session) -> User | None:
    """Return the current user from the bearer token, or None."""
    token = _bearer(request)
    if not token:
        return None
    return authenticate(token, db)


def require_user(request: Request, db: Session = Depends(get_db)) -> User:
    """Dependency: raises 401 if no authenticated user, 403 if deactivated."""
    user = get_user(request, db)
    if not user:
        raise HTTPException(401, "Not authenticated")
    if not user.is_active:
        raise HTTPException(403, "Account deactivated — contact admin")
    return user


def require_roles(*roles: str):
    """Dependency factory: the user must hold one of `roles` (admin always passes)."""

    def dependency(user: User = Depends(require_user)) -> User:
        if user.role != "admin" and user.role not in roles:
            raise HTTPException(403, f"Requires role: {', '.join(roles)}")
        return user

    return dependency


require_admin = require_roles("admin")


def require_cron_access(request: Request, db: Session = Depends(get_db)) -> User | None:
    """Cron endpoints: X-Cron-Secret, or an admin/founder bearer token."""
    secret = request.headers.get("x-cron-secret")
    if secret and settings.cron_secret and hmac.compare_digest(secret, settings.cron_secret):
        return None
    user = require_user(request, db)
    if user.role not in ("admin", "founder"):
        raise HTTPException(403, "Admin or founder access required")
    return user
