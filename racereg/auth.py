"""Login state carried in a signed, time-limited cookie.

Handlers never touch the cookie directly: they call ``set_login_cookie`` or
``clear_login_cookie`` and ``LoginCookieMiddleware`` applies the change to
whatever response the handler returned.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request
from itsdangerous import BadSignature, URLSafeTimedSerializer
from starlette.middleware.base import BaseHTTPMiddleware

from .settings import settings

COOKIE_NAME = "racereg_auth"
_PENDING = "racereg_login_cookie"  # request.state attribute; "" means clear


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.RACEREG_SECRET_KEY, salt="racereg-login")


@dataclass(frozen=True)
class CurrentUser:
    id: int
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"

    @property
    def is_staff(self) -> bool:
        return self.role in ("ADMIN", "STAFF")

    def to_payload(self) -> dict:
        return {"uid": self.id, "email": self.email, "role": self.role}

    @classmethod
    def from_payload(cls, data: dict) -> "CurrentUser":
        return cls(id=int(data["uid"]), email=str(data["email"]), role=str(data["role"]))


def make_login_token(user: CurrentUser) -> str:
    return _serializer().dumps(user.to_payload())


def read_login_token(token: str) -> Optional[CurrentUser]:
    try:
        data = _serializer().loads(token, max_age=settings.LOGIN_MAX_AGE_SECONDS)
        return CurrentUser.from_payload(data)
    except (BadSignature, KeyError, TypeError, ValueError):
        # expired, tampered or written by an older payload layout
        return None


def set_login_cookie(request: Request, user: CurrentUser) -> None:
    setattr(request.state, _PENDING, make_login_token(user))


def clear_login_cookie(request: Request) -> None:
    setattr(request.state, _PENDING, "")


def get_current_user(request: Request) -> Optional[CurrentUser]:
    token = request.cookies.get(COOKIE_NAME)
    return read_login_token(token) if token else None


def login_required(user: Optional[CurrentUser] = Depends(get_current_user)) -> CurrentUser:
    if user is None:
        raise HTTPException(status_code=401, detail="Login required")
    return user


def require_roles(*roles: str) -> Callable[..., CurrentUser]:
    """Dependency factory: logged in and holding one of ``roles``."""

    def dependency(user: CurrentUser = Depends(login_required)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user

    return dependency


staff_required = require_roles("ADMIN", "STAFF")
admin_required = require_roles("ADMIN")


class LoginCookieMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        pending = getattr(request.state, _PENDING, None)
        if pending:
            response.set_cookie(
                COOKIE_NAME,
                pending,
                max_age=settings.LOGIN_MAX_AGE_SECONDS,
                httponly=True,
                samesite="lax",
                secure=settings.COOKIE_SECURE,
            )
        elif pending == "":
            response.delete_cookie(COOKIE_NAME)
        return response
