from fastapi import Request
from app.core.middleware import get_session_context, get_request_meta
from app.core.exceptions import AuthenticationError, AuthorizationError
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class AuthenticatedUser:
    """
    Dependency class that provides the caller identity and request metadata.
    Use this for endpoints that require authentication.
    """
    def __init__(self, request: Request):
        self.session = get_session_context(request)
        self.meta = get_request_meta(request)

        if not self.session.is_valid:
            raise AuthenticationError("Authentication required")

    @property
    def user_id(self) -> str:
        return str(self.session.user_id)

    @property
    def email(self) -> Optional[str]:
        return self.session.email

    @property
    def role(self) -> str:
        return self.session.role

    @property
    def is_staff(self) -> bool:
        return self.session.is_staff


def get_authenticated_user(request: Request) -> AuthenticatedUser:
    """Dependency to get authenticated user"""
    return AuthenticatedUser(request)


def require_staff(request: Request) -> AuthenticatedUser:
    """Dependency for gate staff and organizers (check-in, coupon admin, audit)"""
    user = AuthenticatedUser(request)
    if not user.is_staff:
        raise AuthorizationError("Staff role required")
    return user
