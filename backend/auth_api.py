"""
Authentication and user management endpoints
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    CurrentUser, authenticate_user, can_manage_account, create_access_token,
    get_current_user, get_password_hash_async, load_permissions, require_roles,
)
from database import get_db
from errors import ConflictError, InvalidCredentials, NotFoundError, ValidationFailed
from file_utils import delete_photo, photo_path, save_photo
from migrations.schema_migrations import repair_all_permissions
from models import User, UserRole
from permissions import default_permissions, effective_permissions
from schemas import LoginRequest, LoginResponse, UserCreate, UserResponse, UserUpdate
from security import client_key, login_limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

require_user_manager = require_roles(UserRole.ADMIN, UserRole.MANAGER)


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        role=user.role,
        permissions=effective_permissions(user.role, load_permissions(user)),
        photo_filename=user.photo_filename,
        created_at=user.created_at,
    )


async def _get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


async def _ensure_username_free(db: AsyncSession, username: str, exclude_id: int = None) -> None:
    query = select(User.id).where(User.username == username)
    if exclude_id is not None:
        query = query.where(User.id != exclude_id)
    if (await db.execute(query)).first():
        raise ConflictError("Username already exists")


def _forbid_unless_manages(actor: CurrentUser, role: UserRole) -> None:
    if not can_manage_account(actor, role):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Managers can only manage employee accounts")


@router.post("/login", response_model=LoginResponse)
async def login(credentials: LoginRequest, request: Request, db: AsyncSession = Depends(get_db)):
    ip = client_key(request)
    wait = login_limiter.retry_after(ip)
    if wait:
        raise HTTPException(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "Too many login attempts. Try again later.",
            headers={"Retry-After": str(wait)},
        )

    user = await authenticate_user(db, credentials.username, credentials.password)
    if user is None:
        login_limiter.record(ip)
        logger.warning(f"Failed login for '{credentials.username}' from {ip}")
        raise InvalidCredentials("Invalid username or password")

    logger.info(f"User {user.username} logged in")
    return LoginResponse(token=create_access_token(user.id, user.role), user=user_to_response(user))


@router.get("/verify")
async def verify_token(current_user: CurrentUser = Depends(get_current_user)):
    return {"valid": True, "user": current_user.to_public()}


@router.get("/users", response_model=List[UserResponse])
async def list_users(
    current_user: CurrentUser = Depends(require_user_manager),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(User).order_by(User.username))
    return [user_to_response(user) for user in result.scalars().all()]


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    data: UserCreate,
    current_user: CurrentUser = Depends(require_user_manager),
    db: AsyncSession = Depends(get_db)
):
    _forbid_unless_manages(current_user, data.role)
    await _ensure_username_free(db, data.username)

    flags = data.permissions or default_permissions(data.role)
    user = User(
        username=data.username,
        hashed_password=await get_password_hash_async(data.password),
        role=data.role,
        permissions=flags.to_storage(),
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    logger.info(f"User {user.username} ({user.role.value}) created by {current_user.username}")
    return user_to_response(user)


@router.put("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    data: UserUpdate,
    current_user: CurrentUser = Depends(require_user_manager),
    db: AsyncSession = Depends(get_db)
):
    user = await _get_user(db, user_id)
    _forbid_unless_manages(current_user, user.role)
    if data.role is not None:
        _forbid_unless_manages(current_user, data.role)

    if data.username is not None and data.username != user.username:
        await _ensure_username_free(db, data.username, exclude_id=user.id)
        user.username = data.username
    if data.password:
        user.hashed_password = await get_password_hash_async(data.password)
    if data.role is not None:
        user.role = data.role
    if data.permissions is not None:
        user.permissions = data.permissions.to_storage()

    await db.commit()
    await db.refresh(user)
    logger.info(f"User {user.id} updated by {current_user.username}")
    return user_to_response(user)


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: int,
    current_user: CurrentUser = Depends(require_user_manager),
    db: AsyncSession = Depends(get_db)
):
    if user_id == current_user.id:
        raise ValidationFailed("You cannot delete your own account")

    user = await _get_user(db, user_id)
    _forbid_unless_manages(current_user, user.role)

    photo = user.photo_filename
    await db.delete(user)
    await db.commit()
    if photo:
        delete_photo(photo)

    logger.info(f"User {user_id} deleted by {current_user.username}")
    return {"message": "User deleted successfully"}


@router.post("/fix-permissions")
async def fix_permissions(
    current_user: CurrentUser = Depends(require_roles(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    """Re-run the stored permission repair over every user"""
    repaired = await repair_all_permissions(db)
    await db.commit()
    return {"message": "Permissions repaired", "repaired": repaired}


@router.post("/upload-photo")
async def upload_photo(
    file: UploadFile = File(...),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    user = await _get_user(db, current_user.id)
    filename = await save_photo(file, user.id, old_filename=user.photo_filename)
    user.photo_filename = filename
    await db.commit()
    return {"message": "Photo uploaded", "photo_filename": filename}


@router.get("/photo/{user_id}")
async def get_photo(user_id: int, db: AsyncSession = Depends(get_db)):
    user = await _get_user(db, user_id)
    path = photo_path(user.photo_filename) if user.photo_filename else None
    if path is None:
        raise NotFoundError("Photo not found")
    return FileResponse(path)


@router.delete("/photo")
async def remove_photo(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    user = await _get_user(db, current_user.id)
    if not user.photo_filename:
        raise NotFoundError("Photo not found")
    delete_photo(user.photo_filename)
    user.photo_filename = None
    await db.commit()
    return {"message": "Photo removed"}
