from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from config import settings
from database import get_db
from models import User, UserRole, Permission
from permissions import PermissionSet, allows, effective_permissions, repair_permissions
from timezone_utils import utcnow

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash"""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a password"""
    return pwd_context.hash(password)


async def verify_password_async(plain_password: str, hashed_password: str) -> bool:
    # bcrypt is CPU bound; keep it off the event loop
    return await run_in_threadpool(verify_password, plain_password, hashed_password)


async def get_password_hash_async(password: str) -> str:
    return await run_in_threadpool(get_password_hash, password)


def create_access_token(user_id: int, role: UserRole, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT for a user (24 hours by default)"""
    expire = utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user_id),
        "role": role.value,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[int]:
    """Return the user id carried by a token, or None if it is invalid or expired"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    if subject is None or not str(subject).isdigit():
        return None
    return int(subject)


@dataclass
class CurrentUser:
    """Authenticated user attached to a request"""
    id: int
    username: str
    role: UserRole
    permissions: PermissionSet
    photo_filename: Optional[str] = None

    def can(self, permission: Permission) -> bool:
        return allows(self.role, self.permissions, permission)

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role.value,
            "permissions": effective_permissions(self.role, self.permissions),
            "photo_filename": self.photo_filename,
        }


def load_permissions(user: User) -> PermissionSet:
    """Stored flags as a PermissionSet; anything unreadable falls back to safe defaults"""
    return repair_permissions(user.permissions)


def to_current_user(user: User) -> CurrentUser:
    return CurrentUser(
        id=user.id,
        username=user.username,
        role=user.role,
        permissions=load_permissions(user),
        photo_filename=user.photo_filename,
    )


async def authenticate_user(db: AsyncSession, username: str, password: str) -> Optional[User]:
    """Return the user if the credentials match, else None"""
    result = await db.execute(select(User).where(User.username == username))
    user = result.scalar_one_or_none()
    if user is None:
        return None
    if not await verify_password_async(password, user.hashed_password):
        return None
    return user


async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
) -> CurrentUser:
    """Get the current authenticated user"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Access token required" if not token else "Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception

    user_id = decode_access_token(token)
    if user_id is None:
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise credentials_exception
    return to_current_user(user)


def require_permission(permission: Permission):
    """
    Dependency factory for permission checks.

    Usage:
        @router.post("", dependencies=[Depends(require_permission(Permission.PDV))])
        async def create_sale(...):
            ...
    """
    async def checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not current_user.can(permission):
            raise HTTPException(status.HTTP_403_FORBIDDEN, f"Permission '{permission.value}' required")
        return current_user
    return checker


def require_any_permission(*permissions: Permission):
    """Like require_permission, but any one of the given flags is enough"""
    async def checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not any(current_user.can(permission) for permission in permissions):
            names = ", ".join(p.value for p in permissions)
            raise HTTPException(status.HTTP_403_FORBIDDEN, f"One of these permissions is required: {names}")
        return current_user
    return checker


def require_roles(*roles: UserRole):
    async def checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in roles:
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Insufficient role for this operation")
        return current_user
    return checker


def can_manage_account(actor: CurrentUser, target_role: UserRole) -> bool:
    """Admins manage everyone; managers only manage employee accounts"""
    if actor.role == UserRole.ADMIN:
        return True
    if actor.role == UserRole.MANAGER:
        return target_role == UserRole.EMPLOYEE
    return False
