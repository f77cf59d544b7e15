from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Request

from .config import AUTH_COOKIE_NAME, JWT_ALGORITHM, JWT_SECRET


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_token(token: str, secret: str = JWT_SECRET) -> Optional[Identity]:
    """Decode an auth-token JWT; anything invalid or expired is anonymous."""
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        return None
    user_id = payload.get("userId")
    if not user_id:
        return None
    return Identity(user_id=str(user_id), email=payload.get("email"), role=payload.get("role") or "customer")


def get_identity(request: Request) -> Optional[Identity]:
    """FastAPI dependency: the caller's identity, or None for guests."""
    token = request.cookies.get(AUTH_COOKIE_NAME)
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
    if not token:
        return None
    return decode_token(token)
