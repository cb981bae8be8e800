import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from everwell.core import config

TOKEN_ALGORITHM = "HS256"
TOKEN_TYPE = "access"

_passwords = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return _passwords.hash(password)


def password_matches(password: str, stored_hash: Optional[str]) -> bool:
    """Check a login attempt; an unreadable stored hash counts as a mismatch."""
    if not stored_hash:
        return False
    try:
        return _passwords.verify(password, stored_hash)
    except ValueError:
        return False


def issue_access_token(
    user_id: int, lifetime: Optional[timedelta] = None, now: Optional[datetime] = None
) -> str:
    issued_at = now or datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "typ": TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + (lifetime or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)),
    }
    return jwt.encode(claims, config.secret_key(), algorithm=TOKEN_ALGORITHM)


def user_id_from_token(token: str) -> int:
    """Return the user id a bearer token was issued for.

    Raises JWTError for bad signatures, expired tokens, tokens of another
    type, and subjects that are not a positive user id.
    """
    claims = jwt.decode(token, config.secret_key(), algorithms=[TOKEN_ALGORITHM])
    if claims.get("typ") != TOKEN_TYPE:
        raise JWTError("Unexpected token type")
    subject = str(claims.get("sub") or "")
    if not subject.isdecimal() or int(subject) < 1:
        raise JWTError("Invalid subject")
    return int(subject)


def secrets_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison for shared secrets such as CRON_SECRET."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
