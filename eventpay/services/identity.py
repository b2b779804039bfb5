from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from eventpay.config import get_settings
from eventpay.errors import Forbidden, Unauthenticated
from eventpay.models.order import Order

settings = get_settings()
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Caller:
    """The authenticated identity behind a request."""

    user_id: Optional[str]
    email: Optional[str]
    is_staff: bool = False

    def owns(self, order: Order) -> bool:
        """Members own orders by user id; guests by the email they paid with."""
        if order.user_id:
            return self.user_id is not None and self.user_id == order.user_id
        if order.guest_email and self.email:
            return order.guest_email.strip().lower() == self.email.strip().lower()
        return False

    def describe(self) -> str:
        return self.user_id or self.email or "anonymous"


class IdentityService:
    @staticmethod
    def decode_token(token: str) -> Optional[Caller]:
        try:
            payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        except JWTError:
            return None

        user_id = payload.get("sub")
        email = payload.get("email")
        if not user_id and not email:
            return None
        return Caller(
            user_id=str(user_id) if user_id else None,
            email=email,
            is_staff=bool(payload.get("is_staff", False))
        )


def get_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get("access_token")


def get_current_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[Caller]:
    token = get_token(request, credentials)
    if not token:
        return None
    return IdentityService.decode_token(token)


def get_current_caller_required(caller: Optional[Caller] = Depends(get_current_caller)) -> Caller:
    if caller is None:
        raise Unauthenticated()
    return caller


def get_current_staff(caller: Caller = Depends(get_current_caller_required)) -> Caller:
    if not caller.is_staff:
        raise Forbidden()
    return caller
