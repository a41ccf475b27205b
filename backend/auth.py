import enum
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone

import jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

import config
import errors
import models
from models import Role

logger = logging.getLogger(__name__)

# Newer bcrypt releases break passlib's backend self-test, fall back to pbkdf2 then
try:
    pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
    pwd_context.hash("test")
    logger.debug("bcrypt backend initialised")
except Exception as e:
    logger.warning("bcrypt is not available (%s), using pbkdf2_sha256", e)
    pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def get_secret_key():
    env_key = os.getenv("SECRET_KEY")
    if env_key:
        return env_key

    key_file = ".secret_key"
    if os.path.exists(key_file):
        try:
            with open(key_file, "r", encoding='utf-8') as f:
                return f.read().strip()
        except UnicodeDecodeError:
            logger.warning("Could not read secret key file, generating a new one")
            os.remove(key_file)

    new_key = secrets.token_urlsafe(32)
    with open(key_file, "w", encoding='utf-8') as f:
        f.write(new_key)
    if os.name != 'nt':
        os.chmod(key_file, 0o600)
    logger.info("Generated a new SECRET_KEY")
    return new_key


SECRET_KEY = get_secret_key()
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = config.ACCESS_TOKEN_EXPIRE_MINUTES


class Capability(str, enum.Enum):
    ANY_AUTHENTICATED = "any-authenticated"
    STAFF_OR_ADMIN = "staff-or-admin"
    ADMIN_ONLY = "admin-only"
    OWNER_OR_ADMIN = "resource-owner-or-admin"


_CAPABILITY_CHECKS = {
    Capability.ANY_AUTHENTICATED: lambda role, is_owner: True,
    Capability.STAFF_OR_ADMIN: lambda role, is_owner: role.is_staff,
    Capability.ADMIN_ONLY: lambda role, is_owner: role is Role.ADMIN,
    Capability.OWNER_OR_ADMIN: lambda role, is_owner: role is Role.ADMIN or is_owner,
}

_FORBIDDEN_MESSAGES = {
    Capability.ANY_AUTHENTICATED: "Access denied",
    Capability.STAFF_OR_ADMIN: "Staff access required",
    Capability.ADMIN_ONLY: "Admin access required",
    Capability.OWNER_OR_ADMIN: "Access denied",
}


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def authenticate_user(db: Session, email: str, password: str):
    user = db.query(models.User).filter(models.User.email == email.strip().lower()).first()
    if not user or not verify_password(password, user.password):
        return None
    return user


def create_access_token(data: dict):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def create_user_token(user):
    return create_access_token(data={"sub": str(user.id), "role": user.role})


def verify_token(token: str):
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def authenticate_token(db: Session, token: str):
    """Resolve a bearer token to an active user or raise Unauthorized."""
    if not token:
        raise errors.Unauthorized("Access token required")

    payload = verify_token(token)
    if not payload:
        raise errors.Unauthorized("Invalid or expired token")

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise errors.Unauthorized("Invalid token")

    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise errors.Unauthorized("Invalid token - user not found")
    if not user.is_active:
        raise errors.Unauthorized("Account is deactivated")
    return user


def authorize(user, capability, owner_id=None):
    """
    Check that ``user`` holds ``capability``.

    For resource-owner-or-admin the resource's owner id must be passed;
    admins pass every ownership check. Returns the user so the call can be
    used inline in dependencies.
    """
    capability = Capability(capability)
    role = Role(user.role)
    is_owner = owner_id is not None and owner_id == user.id
    if not _CAPABILITY_CHECKS[capability](role, is_owner):
        raise errors.Forbidden(_FORBIDDEN_MESSAGES[capability])
    return user
