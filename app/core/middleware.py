import logging
import time
import uuid
from typing import Optional, Dict, Any
from fastapi import Request

logger = logging.getLogger(__name__)

STAFF_ROLES = {"admin", "organizer", "staff"}


class SessionContext:
    """Caller identity resolved by the upstream authentication layer"""
    def __init__(self, session_data: Optional[Dict[str, Any]] = None):
        if session_data and session_data.get('user_id'):
            self.user_id = session_data['user_id']
            self.email = session_data.get('email')
            self.role = (session_data.get('role') or 'user').lower()
            self.is_valid = True
        else:
            self.user_id = None
            self.email = None
            self.role = None
            self.is_valid = False

    @property
    def is_staff(self) -> bool:
        return self.is_valid and self.role in STAFF_ROLES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'email': self.email,
            'role': self.role,
            'is_valid': self.is_valid
        }


class RequestMeta:
    """Per-request metadata attached to audit records"""
    def __init__(self, request_id: Optional[str] = None, ip_address: Optional[str] = None,
                 user_agent: Optional[str] = None):
        self.request_id = request_id
        self.ip_address = ip_address
        self.user_agent = user_agent

    def to_dict(self) -> Dict[str, Any]:
        return {
            'request_id': self.request_id,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent
        }


async def session_validation_middleware(request: Request, call_next):
    """
    Builds request.state.session_context from the identity headers.
    Authentication happens upstream; this service trusts X-User-Id, X-User-Email and X-User-Role.
    """
    try:
        user_id = request.headers.get("x-user-id")
        if user_id:
            request.state.session_context = SessionContext({
                'user_id': user_id.strip(),
                'email': request.headers.get("x-user-email"),
                'role': request.headers.get("x-user-role"),
            })
        else:
            request.state.session_context = SessionContext()
    except Exception as e:
        logger.warning(f"Session validation error for path {request.url.path}: {e}")
        request.state.session_context = SessionContext()

    return await call_next(request)


def get_session_context(request: Request) -> SessionContext:
    """Helper function to get session context from request"""
    return getattr(request.state, 'session_context', SessionContext())


def get_request_meta(request: Request) -> RequestMeta:
    return getattr(request.state, 'request_meta', RequestMeta())


async def request_logging_middleware(request: Request, call_next):
    """Assigns a request id, records client metadata and logs timing"""
    start_time = time.time()

    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)

    request.state.request_id = request_id
    request.state.request_meta = RequestMeta(
        request_id=request_id,
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent")
    )

    response = await call_next(request)

    duration = round((time.time() - start_time) * 1000, 2)
    response.headers["X-Request-Id"] = request_id
    logger.info(f"{request.method} {request.url.path} | {response.status_code} | {duration}ms | {request_id}")

    return response
