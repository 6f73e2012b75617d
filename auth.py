"""
Authentication and authorization guards.

The guards are plain functions (`authenticate`, `authorize`, `require_verification`,
`require_exporter_approval`, `check_ownership`) wrapped as FastAPI dependencies
below. Authentication always runs first; the other guards only look at the
identity it resolved.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from database import get_by_id, get_db, serialize
from errors import Forbidden, NotFound, Unauthorized
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
# auto_error=False so a missing header reaches our own Unauthorized, and so
# optional authentication can fall through to anonymous.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

SENSITIVE_USER_FIELDS = ("passwordHash", "passwordResetToken", "passwordResetExpires",
                         "emailVerificationToken", "emailVerificationExpires")

# ------------------------- Passwords & tokens -------------------------


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def public_user(user: dict) -> dict:
    """Externally visible user: credential fields removed, ids as strings."""
    return serialize({k: v for k, v in user.items() if k not in SENSITIVE_USER_FIELDS})


# ------------------------- Guards -------------------------


def authenticate(db: Database, token: Optional[str], settings: Settings) -> dict:
    if not token:
        raise Unauthorized("Not authorized, no token")
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise Unauthorized("Not authorized, token failed")
    user_id = payload.get("sub")
    user = get_by_id(db, "user", user_id) if user_id else None
    if not user:
        raise Unauthorized("User not found")
    if not user.get("isActive", True):
        raise Unauthorized("Account is deactivated")
    return public_user(user)


def authorize(user: Optional[dict], roles: Iterable[str]) -> dict:
    roles = tuple(roles)
    if not user:
        raise Forbidden("User not authenticated")
    if user.get("role") not in roles:
        raise Forbidden(f"Access denied. Requires role: {', '.join(roles)}")
    return user


def require_verification(user: dict) -> dict:
    if not user.get("isVerified"):
        raise Forbidden("Account verification required")
    return user


def require_exporter_approval(user: dict) -> dict:
    if user.get("role") == "exporter" and not user.get("isExporterApproved"):
        raise Forbidden("Your exporter account is pending approval from admin")
    return user


def check_ownership(db: Database, collection: str, resource_id, owner_field: str, user: dict) -> dict:
    """Load the resource; admins pass, everybody else must be its owner."""
    resource = get_by_id(db, collection, resource_id)
    if not resource:
        raise NotFound(f"{collection.capitalize()} not found")
    if user.get("role") == "admin":
        return resource
    if str(resource.get(owner_field)) != str(user.get("id")):
        raise Forbidden("Access denied. Resource ownership required.")
    return resource


# ------------------------- FastAPI dependencies -------------------------


def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db: Database = Depends(get_db),
                     settings: Settings = Depends(get_settings)) -> dict:
    return authenticate(db, token, settings)


def get_optional_user(token: Optional[str] = Depends(oauth2_scheme), db: Database = Depends(get_db),
                      settings: Settings = Depends(get_settings)) -> Optional[dict]:
    if not token:
        return None
    try:
        return authenticate(db, token, settings)
    except Unauthorized as exc:
        logger.debug(f"Optional auth failed: {exc.message}")
        return None


def require_roles(*roles):
    def wrapper(user: dict = Depends(get_current_user)) -> dict:
        return authorize(user, roles)
    return wrapper


require_farmer = require_roles("farmer")
require_buyer = require_roles("buyer")
require_admin = require_roles("admin")


def require_verified(user: dict = Depends(get_current_user)) -> dict:
    return require_verification(user)


def require_approved_exporter(user: dict = Depends(get_current_user)) -> dict:
    return require_exporter_approval(user)


def owned_resource(collection: str, owner_field: str, id_param: str):
    """Dependency returning the resource named by path parameter `id_param`, if the caller may touch it."""
    def wrapper(request: Request, user: dict = Depends(get_current_user), db: Database = Depends(get_db)) -> dict:
        return check_ownership(db, collection, request.path_params.get(id_param), owner_field, user)
    return wrapper
