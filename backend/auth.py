# auth.py — Token verification & role-based permission scopes for Berthwise
# Features:
# - HS256 JWT access tokens with JTI
# - Organisation roles mapped to fine-grained permission scopes
# - Shared token decoding for HTTP requests and the real-time handshake
#
# Token issuance (login, refresh, invites) lives outside this service;
# create_access_token exists for seeding and tests.

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import User, UserRole

logger = logging.getLogger("berthwise.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "⚠️  JWT_SECRET_KEY not set. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

security = HTTPBearer()


# ============================================================
# ROLE → PERMISSION SCOPES
# ============================================================

ADMIN_SCOPE = "admin:full"

ROLE_PERMISSIONS = {
    UserRole.SUPER_ADMIN: [ADMIN_SCOPE],
    UserRole.ORG_ADMIN: [ADMIN_SCOPE],
    UserRole.MANAGER: [
        "work_orders:view", "work_orders:create", "work_orders:edit",
        "work_orders:assign", "work_orders:approve", "work_orders:delete",
        "workflows:manage",
    ],
    UserRole.INSPECTOR: [
        "work_orders:view", "work_orders:create", "work_orders:edit",
    ],
    UserRole.VIEWER: [
        "work_orders:view",
    ],
}


# ============================================================
# SCHEMAS
# ============================================================

class CurrentUser(BaseModel):
    id: str
    email: str
    display_name: str
    organisation_id: str
    role: str
    is_active: bool
    permissions: List[str] = []

    def has_scope(self, *scopes: str) -> bool:
        """True when the user holds any of the given scopes (admin holds all)."""
        if ADMIN_SCOPE in self.permissions:
            return True
        return any(scope in self.permissions for scope in scopes)


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def decode_access_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Non-raising variant for the WebSocket handshake."""
        if not token:
            return None
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError:
            return None
        if payload.get("type") != "access":
            return None
        if not payload.get("sub") or not payload.get("organisation_id"):
            return None
        return payload

    @staticmethod
    def get_user_permissions(role) -> List[str]:
        try:
            return ROLE_PERMISSIONS.get(UserRole(role), ROLE_PERMISSIONS[UserRole.VIEWER])
        except ValueError:
            return ROLE_PERMISSIONS[UserRole.VIEWER]


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user or not user.is_active or user.deleted_at is not None:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    role = user.role.value if isinstance(user.role, UserRole) else user.role
    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        organisation_id=user.organisation_id,
        role=role,
        is_active=user.is_active,
        permissions=AuthService.get_user_permissions(role),
    )


def require_permission(*scopes: str):
    """Dependency factory: require every listed permission scope"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        for scope in scopes:
            if not user.has_scope(scope):
                raise HTTPException(
                    status_code=403,
                    detail=f"Missing required permission: {scope}",
                )
        return user
    return _check
