import datetime as dt
import ipaddress
import uuid
from typing import Any, Dict, Optional

from argon2 import PasswordHasher
from argon2.exceptions import VerificationError, InvalidHashError
from jose import jwt

from foldly.config import config

ph = PasswordHasher()


def hash_password(pw: str) -> str:
    return ph.hash(pw)


def verify_password(pw: str, hashed: str) -> bool:
    try:
        return ph.verify(hashed, pw)
    except (VerificationError, InvalidHashError):
        return False


def make_jwt(sub: str, scope: str, ttl: dt.timedelta) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload: Dict[str, Any] = {
        "iss": "foldly-auth",
        "sub": sub,
        "scope": scope,
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def mint_access(user_id: str) -> str:
    return make_jwt(user_id, "access", dt.timedelta(minutes=config.ACCESS_TTL_MIN))


def parse_client_ip(raw: Optional[str]) -> Optional[str]:
    """Normalise a client address; returns None when it is not an IP."""
    if not raw:
        return None

    candidate = raw.split(",")[0].strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None
