"""
Actor context: turn a bearer credential into an Actor.

A missing, malformed, expired or unknown identity is always an
UnauthenticatedError. No fallback id is ever produced, so a bad token can
never act as user 0 or any other real account.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from lifecycle_guard.config import Settings, get_settings
from lifecycle_guard.database import reading
from lifecycle_guard.domain import Actor, Role
from lifecycle_guard.errors import UnauthenticatedError
from lifecycle_guard.repositories import MAX_ID, UserRepository

logger = structlog.get_logger(__name__)

# Password hashing
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify a password against its hash; accounts without one never match"""
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(user_id: int, settings: Optional[Settings] = None,
                        expires_delta: Optional[timedelta] = None) -> str:
    """Issue a signed access token carrying the user id as `sub`"""
    settings = settings or get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = {"sub": str(user_id), "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def parse_subject(sub) -> int:
    """Strictly parse a `sub` claim into a positive user id"""
    if isinstance(sub, bool) or sub is None:
        raise UnauthenticatedError("Token has no subject")
    text = str(sub).strip()
    # isdigit() alone accepts characters such as "²" that int() refuses
    if not (text.isascii() and text.isdigit()) or len(text) > len(str(MAX_ID)):
        raise UnauthenticatedError("Token subject is not a user id")
    user_id = int(text)
    if not 0 < user_id <= MAX_ID:
        raise UnauthenticatedError("Token subject is not a user id")
    return user_id


def parse_role(value) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise UnauthenticatedError(f"Unknown role: {value!r}")


class IdentityResolver:
    """Resolve the caller from a JWT and the user table"""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.users = UserRepository(db)
        self.db = db

    def decode(self, credential: Optional[str]) -> int:
        if not credential or not credential.strip():
            raise UnauthenticatedError("Missing credentials")
        try:
            payload = jwt.decode(
                credential.strip(),
                self.settings.secret_key,
                algorithms=[self.settings.algorithm],
            )
        except jwt.ExpiredSignatureError:
            raise UnauthenticatedError("Token has expired")
        except jwt.InvalidTokenError:
            raise UnauthenticatedError("Could not validate credentials")

        if payload.get("type") != "access":
            raise UnauthenticatedError("Not an access token")
        return parse_subject(payload.get("sub"))

    def resolve_actor(self, credential: Optional[str]) -> Actor:
        """Return the Actor behind `credential` or raise UnauthenticatedError"""
        user_id = self.decode(credential)
        with reading(self.db):
            user = self.users.get_active_user(user_id)
        if user is None:
            logger.info("unknown_or_inactive_user", user_id=user_id)
            raise UnauthenticatedError("Could not validate credentials")
        return Actor(id=user.id, role=parse_role(user.role))
