import re
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from everwell.core.errors import log_error
from everwell.db.models import Profile

HANDLE_PATTERN = re.compile(r"^[a-z0-9_]{3,30}$")


def normalize_handle(handle: str) -> str:
    return (handle or "").strip().lower()


def is_valid_handle(handle: str) -> bool:
    return bool(HANDLE_PATTERN.match(normalize_handle(handle)))


def is_handle_available(db: Session, handle: str, user_id: Optional[int] = None) -> bool:
    """Case-insensitive availability check. A handle the caller already owns counts as available."""
    normalized = normalize_handle(handle)
    if not HANDLE_PATTERN.match(normalized):
        raise ValueError("Handle must be 3-30 characters of lowercase letters, digits, or underscores")
    owner = db.query(Profile).filter(func.lower(Profile.handle) == normalized).first()
    if owner is None:
        return True
    return user_id is not None and owner.user_id == user_id


def ensure_profile(db: Session, user_id: int, full_name: Optional[str] = None) -> Profile:
    profile = db.query(Profile).filter(Profile.user_id == user_id).first()
    if profile:
        return profile
    profile = Profile(user_id=user_id, full_name=(full_name or "").strip() or None)
    db.add(profile)
    db.flush()
    return profile


def get_profile(db: Session, user_id: int) -> Optional[Profile]:
    try:
        profile = db.query(Profile).filter(Profile.user_id == user_id).first()
        if profile:
            return profile
        profile = ensure_profile(db, user_id)
        db.commit()
        return profile
    except Exception as exc:
        db.rollback()
        log_error("get_profile", exc, user_id=user_id)
        return None
