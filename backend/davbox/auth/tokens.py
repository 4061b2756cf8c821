"""Password hashing and signed session tokens."""

from datetime import datetime
from typing import Any, Iterable, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

ALGORITHM = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Bcrypt limits input to 72 bytes; truncate to avoid ValueError
_BCRYPT_MAX_BYTES = 72


def _truncate_for_bcrypt(s: str) -> str:
    """Truncate string to 72 bytes (UTF-8) for bcrypt."""
    b = s.encode("utf-8")[: _BCRYPT_MAX_BYTES]
    return b.decode("utf-8", errors="ignore")


def hash_password(password: str) -> str:
    """Hash a password for storage. Passwords longer than 72 bytes are truncated."""
    return pwd_context.hash(_truncate_for_bcrypt(password))


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a plain password against a hash."""
    try:
        return pwd_context.verify(_truncate_for_bcrypt(plain), hashed)
    except ValueError:
        # Malformed hash in the database
        return False


def create_session_token(
    session_id: str, user_id: str, expires_at: datetime, secret_key: str
) -> str:
    """
    Sign a session id. The id itself is random (secrets.token_urlsafe); the
    secret key only authenticates it, so a leaked key alone cannot mint
    sessions that exist server-side.
    """
    to_encode: dict[str, Any] = {
        "sid": session_id,
        "sub": user_id,
        "exp": expires_at,
        "type": "session",
    }
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def decode_session_token(token: str, keys: Iterable[str]) -> Optional[dict[str, Any]]:
    """
    Verify the signature against each key in turn (current key first, then
    keys in the rotation grace window); return the payload or None.
    Expiry is not checked here: the session row is authoritative.
    """
    for key in keys:
        if not key:
            continue
        try:
            payload = jwt.decode(
                token, key, algorithms=[ALGORITHM], options={"verify_exp": False}
            )
        except JWTError:
            continue
        if payload.get("type") != "session" or not payload.get("sid"):
            return None
        return payload
    return None
