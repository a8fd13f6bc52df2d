from __future__ import annotations

import asyncio
from dataclasses import dataclass

from fastapi import APIRouter, Depends, Request, Response

from bizmarket.api.schemas import (
    ContactSellerRequest,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RevocationResponse,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
    UserResponse,
)
from bizmarket.config import Settings
from bizmarket.logging import email_fingerprint, get_logger
from bizmarket.service import rate_limit
from bizmarket.service.antibot import ensure_human
from bizmarket.service.errors import (
    REVOCATION_RETRY_AFTER_SECONDS,
    InvalidSessionError,
    ServiceUnavailableError,
)
from bizmarket.service.runtime import get_runtime
from bizmarket.service.sessions import BulkRevocation, is_well_formed_token
from bizmarket.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> str:
    # Proxy headers are resolved by the ASGI server (uvicorn --proxy-headers)
    return request.client.host if request.client else "unknown"


def _user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


def _cookie_secure(request: Request, settings: Settings) -> bool:
    if not settings.session_cookie_secure:
        return False
    if settings.is_development and request.url.scheme != "https":
        # Plain-HTTP local development cannot round-trip a Secure cookie
        return False
    return True


def _set_session_cookie(
    response: Response, request: Request, settings: Settings, session: Session
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        session.token,
        max_age=settings.session_ttl_minutes * 60,
        path="/",
        domain=settings.session_cookie_domain,
        secure=_cookie_secure(request, settings),
        httponly=settings.session_cookie_httponly,
        samesite=settings.session_cookie_samesite.value,
    )


def _clear_session_cookie(response: Response, request: Request, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        domain=settings.session_cookie_domain,
        secure=_cookie_secure(request, settings),
        httponly=settings.session_cookie_httponly,
        samesite=settings.session_cookie_samesite.value,
    )


def _ensure_fully_revoked(report: BulkRevocation, message: str) -> None:
    if report.revoked < report.total:
        raise ServiceUnavailableError(
            message,
            detail={"total": report.total, "revoked": report.revoked},
            retry_after=REVOCATION_RETRY_AFTER_SECONDS,
        )


@dataclass
class AuthContext:
    user: User
    session: Session


async def get_current_session(request: Request) -> Session:
    """Resolve the session cookie; any miss is reported as unauthenticated."""
    runtime = get_runtime()
    token = request.cookies.get(runtime.settings.session_cookie_name)
    # Reject malformed tokens before touching either store
    if not is_well_formed_token(token):
        raise InvalidSessionError()
    session = await runtime.sessions.get(token)
    if session is None:
        raise InvalidSessionError()
    return session


async def get_user(session: Session = Depends(get_current_session)) -> AuthContext:
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.store.get_user, session.user_id)
    if user is None or not user.is_active:
        raise InvalidSessionError()
    return AuthContext(user=user, session=session)


def _user_response(user: User) -> UserResponse:
    return UserResponse.model_validate(user)


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Create an inactive account and send its verification email.

    Raises:
        400: Bot heuristics tripped or password too weak
        409: Email already registered
        429: Too many signups from this IP
    """
    runtime = get_runtime()
    ensure_human(
        body.website,
        body.form_time,
        min_elapsed_ms=runtime.settings.min_form_elapsed_ms,
        form="signup",
    )
    await runtime.rate_limiter.enforce(rate_limit.SIGNUP, _client_ip(request))
    result = await runtime.accounts.signup(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=_user_response(result.user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and set the session cookie.

    Raises:
        401: Unknown email or wrong password (indistinguishable)
        403: Account not verified yet
        429: Login rate limit hit for this IP, or the account is locked
    """
    runtime = get_runtime()
    ensure_human(
        body.website,
        body.form_time,
        min_elapsed_ms=runtime.settings.min_form_elapsed_ms,
        form="login",
    )
    await runtime.rate_limiter.enforce(rate_limit.LOGIN, _client_ip(request))
    result = await runtime.login_guard.login(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    _set_session_cookie(response, request, runtime.settings, result.session)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=_user_response(result.user), expires_at=result.session.expires_at
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    token = request.cookies.get(settings.session_cookie_name)
    if is_well_formed_token(token):
        # A partial revocation propagates as 503 and the cookie is kept for the retry
        await runtime.sessions.revoke(token)
    _clear_session_cookie(response, request, settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    user = await runtime.accounts.verify_email(body.token)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/forgot-password", response_model=Envelope, status_code=202, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    """Send a reset link if the account exists; the response never says which."""
    runtime = get_runtime()
    await runtime.rate_limiter.enforce(rate_limit.FORGOT_PASSWORD, body.email)
    await runtime.accounts.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data={"message": "if an account exists for that email, a reset link has been sent"},
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    report = await runtime.accounts.reset_password(body.token, body.new_password)
    _ensure_fully_revoked(report, "password updated but some sessions could not be revoked")
    return Envelope(
        status="ok",
        data=RevocationResponse(
            total=report.total, revoked=report.revoked, failed=len(report.failures)
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.sessions.list_active(principal.user.id)
    items = [
        SessionResponse(
            user_id=s.user_id,
            created_at=s.created_at,
            expires_at=s.expires_at,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            current=s.token == principal.session.token,
        )
        for s in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def revoke_all_sessions(
    request: Request, response: Response, principal: AuthContext = Depends(get_user)
):
    """Sign out everywhere, including the calling session."""
    runtime = get_runtime()
    report = await runtime.sessions.revoke_all(principal.user.id)
    _ensure_fully_revoked(report, "some sessions could not be revoked")
    _clear_session_cookie(response, request, runtime.settings)
    return Envelope(
        status="ok",
        data=RevocationResponse(
            total=report.total, revoked=report.revoked, failed=len(report.failures)
        ),
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=_user_response(principal.user))


@router.post("/contact", response_model=Envelope, status_code=202, tags=["contact"])
async def contact_seller(body: ContactSellerRequest):
    """Accept a contact-seller enquiry after bot and rate checks.

    Lead storage and delivery to the seller are handled downstream.
    """
    runtime = get_runtime()
    ensure_human(
        body.website,
        body.form_time,
        min_elapsed_ms=runtime.settings.min_form_elapsed_ms,
        form="contact",
    )
    await runtime.rate_limiter.enforce(rate_limit.CONTACT, body.email)
    logger.info(
        "contact_request_accepted",
        listing_id=body.listing_id,
        sender_fp=email_fingerprint(body.email),
    )
    return Envelope(status="ok", data={"message": "your message has been sent"})
