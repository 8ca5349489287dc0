import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, get_args

from fastapi import Depends, Query
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import settings
from errors import Forbidden, Unauthenticated
from schemas import Role

JWT_ALG = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

_TTL_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
_TTL_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$")


@dataclass(frozen=True)
class Identity:
    """Caller resolved from a verified access token."""

    id: str
    role: Role


# ----------------------- Passwords -----------------------

def hash_password(p: str) -> str:
    return pwd_context.hash(p)


def verify_password(p: str, h: str) -> bool:
    if not h:
        return False
    return pwd_context.verify(p, h)


# ----------------------- Tokens -----------------------

def parse_ttl(value: str) -> timedelta:
    """Parse expiry strings such as ``15m`` or ``7d``; a bare number is seconds."""
    match = _TTL_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid TTL: {value!r}")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _TTL_UNITS[unit or "s"])


def _encode(payload: Dict[str, Any], secret: str, lifetime: timedelta) -> str:
    to_encode = payload.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({"iat": now, "exp": now + lifetime, "jti": uuid.uuid4().hex})
    return jwt.encode(to_encode, secret, algorithm=JWT_ALG)


def create_access_token(payload: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    return _encode(payload, settings.jwt_access_secret, expires_delta or parse_ttl(settings.jwt_access_ttl))


def create_refresh_token(payload: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    return _encode(payload, settings.jwt_refresh_secret, expires_delta or parse_ttl(settings.jwt_refresh_ttl))


def decode_access_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, settings.jwt_access_secret, algorithms=[JWT_ALG])


def decode_refresh_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, settings.jwt_refresh_secret, algorithms=[JWT_ALG])


# ----------------------- Dependencies -----------------------

def get_identity(
    bearer: Optional[str] = Depends(oauth2_scheme),
    token: Optional[str] = Query(None, include_in_schema=False),
) -> Identity:
    # The query parameter serves EventSource clients, which cannot set headers.
    raw = bearer or token
    if not raw:
        raise Unauthenticated("Missing token")
    try:
        claims = decode_access_token(raw)
    except JWTError:
        raise Unauthenticated("Invalid token")
    user_id, role = claims.get("id"), claims.get("role")
    if not isinstance(user_id, str) or role not in get_args(Role):
        raise Unauthenticated("Invalid token")
    return Identity(id=user_id, role=role)


def require_role(*roles: str) -> Callable[..., Identity]:
    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if identity.role not in roles:
            raise Forbidden("Forbidden")
        return identity

    return dependency
