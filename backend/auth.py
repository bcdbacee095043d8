from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError
from datetime import datetime, timedelta, timezone
from typing import Optional
import os
import logging

from models import UserRole

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))


class Principal(BaseModel):
    """Caller identity carried in the bearer token. Billing trusts user_id as issued."""
    user_id: str
    role: UserRole = UserRole.ROLE_USER
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ROLE_ADMIN


def create_access_token(
    user_id: str,
    role: UserRole = UserRole.ROLE_USER,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Tokens are issued by the account service; this is used by tooling and tests."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=JWT_EXPIRATION_HOURS))
    claims = {"user_id": user_id, "role": UserRole(role).value, "exp": expire}
    if email:
        claims["email"] = email
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Principal]:
    """Principal for a valid token, None for an expired, forged or incomplete one."""
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    if not claims.get("user_id"):
        return None
    try:
        return Principal(**claims)
    except ValidationError as e:
        logger.warning(f"Token claims rejected: {e.errors()[0].get('msg')}")
        return None
