import time
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from everwell.api.auth import get_current_user, get_optional_user
from everwell.core import config
from everwell.core.errors import log_error
from everwell.db.models import Profile, User, utcnow
from everwell.db.session import get_db
from everwell.services.profile_service import get_profile, is_handle_available, normalize_handle

router = APIRouter(prefix="/api", tags=["profile"])

AVATAR_URL_PREFIX = "/avatars"
AVATAR_MAX_BYTES = 5 * 1024 * 1024
AVATAR_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


class ProfileResponse(BaseModel):
    user_id: int
    email: str
    full_name: Optional[str] = None
    handle: Optional[str] = None
    avatar_url: Optional[str] = None
    age: Optional[int] = None
    sex: Optional[str] = None
    height_in: Optional[float] = None
    goals: Optional[str] = None
    updated_at: Optional[datetime] = None


class ProfileUpdateRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=160)
    handle: Optional[str] = Field(default=None, max_length=30)
    age: Optional[int] = Field(default=None, ge=1, le=120)
    sex: Optional[str] = Field(default=None, max_length=32)
    height_in: Optional[float] = Field(default=None, gt=0, le=120)
    goals: Optional[str] = Field(default=None, max_length=2000)


class AvatarUploadResponse(BaseModel):
    success: bool = True
    avatar_url: str
    message: str = "Avatar uploaded successfully"


class AvatarRemoveResponse(BaseModel):
    success: bool = True
    message: str = "Avatar removed successfully"


def _profile_response(user: User, profile: Profile) -> ProfileResponse:
    return ProfileResponse(
        user_id=user.id,
        email=user.email,
        full_name=profile.full_name,
        handle=profile.handle,
        avatar_url=profile.avatar_url,
        age=profile.age,
        sex=profile.sex,
        height_in=profile.height_in,
        goals=profile.goals,
        updated_at=profile.updated_at,
    )


def _load_profile(db: Session, user: User) -> Profile:
    profile = get_profile(db, user.id)
    if not profile:
        raise HTTPException(status_code=500, detail="Failed to load profile")
    return profile


@router.get("/profile", response_model=ProfileResponse)
def read_profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> ProfileResponse:
    return _profile_response(user, _load_profile(db, user))


@router.patch("/profile", response_model=ProfileResponse)
def update_profile(
    payload: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ProfileResponse:
    profile = _load_profile(db, user)
    fields = payload.model_fields_set

    if "handle" in fields:
        handle = normalize_handle(payload.handle or "")
        if handle:
            try:
                available = is_handle_available(db, handle, user_id=user.id)
            except ValueError as exc:
                raise HTTPException(status_code=422, detail=str(exc))
            if not available:
                raise HTTPException(status_code=409, detail="Handle is already taken")
        profile.handle = handle or None

    if "full_name" in fields:
        profile.full_name = (payload.full_name or "").strip() or None
    if "age" in fields:
        profile.age = payload.age
    if "sex" in fields:
        profile.sex = (payload.sex or "").strip() or None
    if "height_in" in fields:
        profile.height_in = payload.height_in
    if "goals" in fields:
        profile.goals = (payload.goals or "").strip() or None

    profile.updated_at = utcnow()
    db.commit()
    db.refresh(profile)
    return _profile_response(user, profile)


@router.get("/handles/availability")
def handle_availability(
    handle: str = Query(default=""),
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
) -> JSONResponse:
    try:
        available = is_handle_available(db, handle, user_id=user.id if user else None)
    except ValueError as exc:
        return JSONResponse(status_code=400, content={"ok": False, "error": str(exc)})
    return JSONResponse(content={"ok": True, "available": available})


@router.post("/avatar/upload", response_model=AvatarUploadResponse)
async def upload_avatar(
    avatar: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AvatarUploadResponse:
    content_type = (avatar.content_type or "").lower()
    if content_type not in AVATAR_TYPES:
        raise HTTPException(status_code=400, detail="Invalid file type. Please upload a JPEG, PNG, or WebP image.")

    data = await avatar.read()
    if len(data) > AVATAR_MAX_BYTES:
        raise HTTPException(status_code=400, detail="File too large. Please upload an image smaller than 5MB.")

    file_name = f"{user.id}-{int(time.time() * 1000)}.{AVATAR_TYPES[content_type]}"
    (config.avatar_dir() / file_name).write_bytes(data)

    profile = _load_profile(db, user)
    profile.avatar_url = f"{AVATAR_URL_PREFIX}/{file_name}"
    profile.updated_at = utcnow()
    db.commit()
    return AvatarUploadResponse(avatar_url=profile.avatar_url)


@router.post("/avatar/remove", response_model=AvatarRemoveResponse)
def remove_avatar(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> AvatarRemoveResponse:
    profile = db.query(Profile).filter(Profile.user_id == user.id).first()
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    if not profile.avatar_url:
        raise HTTPException(status_code=400, detail="No avatar to remove")

    file_name = profile.avatar_url.rsplit("/", 1)[-1]
    try:
        (config.avatar_dir() / file_name).unlink()
    except OSError as exc:
        log_error("avatar.remove.delete_file", exc, user_id=user.id, file_name=file_name)

    profile.avatar_url = None
    profile.updated_at = utcnow()
    db.commit()
    return AvatarRemoveResponse()
