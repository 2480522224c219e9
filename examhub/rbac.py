"""
examhub/rbac.py
Actor claims and role checks

User accounts and login live in the session collaborator. The engine only
verifies the bearer JWT it issues and reads three claims from it:

- sub:        actor id (student id, or academy user id)
- role:       STUDENT | ACADEMY | SUPER_ADMIN
- academy_id: the student's academy, or the academy the user administers
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from examhub.config.settings import settings
from examhub.errors import ErrorCode

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


class ActorRole(str, Enum):
    STUDENT = "STUDENT"
    ACADEMY = "ACADEMY"
    SUPER_ADMIN = "SUPER_ADMIN"


@dataclass(frozen=True)
class Actor:
    id: int
    role: ActorRole
    academy_id: Optional[int] = None

    @property
    def is_student(self) -> bool:
        return self.role == ActorRole.STUDENT

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.SUPER_ADMIN


# ================= TOKEN UTILS =================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token with sub, role, academy_id"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({
        "exp": expire,
        "type": "access"
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def actor_from_claims(payload: dict) -> Optional[Actor]:
    if payload.get("type") != "access":
        return None
    try:
        actor_id = int(payload.get("sub"))
        role = ActorRole(payload.get("role"))
        academy_id = payload.get("academy_id")
        academy_id = int(academy_id) if academy_id is not None else None
    except (TypeError, ValueError):
        return None
    return Actor(id=actor_id, role=role, academy_id=academy_id)


# ================= AUTH DEPENDENCIES =================

async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """
    Resolve the calling actor from the bearer token.
    Returns 401 if token is invalid or expired.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "success": False,
            "error": "Unauthorized",
            "message": "Invalid or expired token",
            "code": ErrorCode.AUTH_INVALID
        },
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(token)
    if not payload:
        raise credentials_exception

    actor = actor_from_claims(payload)
    if actor is None:
        raise credentials_exception

    return actor


def require_role(allowed_roles: List[ActorRole]):
    """
    Dependency factory: Require specific role(s).
    Usage: actor: Actor = Depends(require_role([ActorRole.ACADEMY]))
    """
    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed_roles:
            logger.warning(
                f"Access denied: actor {actor.id} with role {actor.role.value} "
                f"attempted to access resource requiring {[r.value for r in allowed_roles]}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "success": False,
                    "error": "Forbidden",
                    "message": f"This action requires one of: {[r.value for r in allowed_roles]}",
                    "code": ErrorCode.FORBIDDEN,
                    "current_role": actor.role.value
                }
            )
        return actor
    return dependency


def ensure_academy_scope(actor: Actor, academy_id: Optional[int]) -> None:
    """Academy users may only touch their own academy's records."""
    if actor.is_admin:
        return
    if academy_id is None or actor.academy_id != academy_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "success": False,
                "error": "Forbidden",
                "message": "Access to another academy's records is not allowed",
                "code": ErrorCode.OWNERSHIP_VIOLATION
            }
        )
