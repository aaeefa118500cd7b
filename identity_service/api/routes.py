"""HTTP route definitions for the identity service."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Cookie, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field

from ..config import get_settings
from ..domain.account import LOCAL_SOURCE, Account
from ..domain.contracts import AccountInput, ClientContext, ProfileInput
from ..domain.service import AccountService
from ..errors import IdentityError, ResourceNotFound
from ..repository import SessionTokenRecord
from ..security.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])
router = APIRouter(prefix="/v1")


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate."""

    account_id: str
    email: EmailStr
    first_name: str | None
    last_name: str | None
    phone: str | None
    mobile: str | None
    locale: str
    roles: list[str]
    source: str
    login_disabled: bool
    email_to_verify: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            phone=account.phone,
            mobile=account.mobile,
            locale=account.locale,
            roles=sorted(account.role_names()),
            source=account.source,
            login_disabled=account.login_disabled,
            email_to_verify=account.email_to_verify,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class AccountRequest(BaseModel):
    """Payload accepted when creating or replacing an account."""

    email: EmailStr
    password: str | None = None
    roles: list[str | dict[str, Any]] = Field(default_factory=list)
    source: str = LOCAL_SOURCE
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    mobile: str | None = None
    locale: str | None = None
    login_disabled: bool = False

    def to_input(self) -> AccountInput:
        return AccountInput(**self.model_dump())


class ProfileRequest(BaseModel):
    """Fields an account owner may replace on their own profile."""

    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    mobile: str | None = None
    locale: str | None = None
    email: EmailStr | None = None


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    """Access token returned after login or renewal."""

    token: str
    token_type: str = "bearer"
    expires_in: int


class ResetCredentialsRequest(BaseModel):
    username: str


class SetPasswordRequest(BaseModel):
    """Redeem a password reset token."""

    verification: str
    password: str = Field(..., min_length=1)


class PasswordUpdateRequest(BaseModel):
    """Change the password of the authenticated account."""

    verification: str
    password: str = Field(..., min_length=1)


class VerifyEmailRequest(BaseModel):
    token: str


class SessionTokenResponse(BaseModel):
    token_id: str
    username: str
    user_agent: str | None
    issued_at: datetime
    expires_at: datetime
    last_used_at: datetime | None = None

    @classmethod
    def from_record(cls, record: SessionTokenRecord) -> "SessionTokenResponse":
        return cls(
            token_id=record.token_id,
            username=record.username,
            user_agent=record.user_agent,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            last_used_at=record.last_used_at,
        )


settings = get_settings()


def _build_rate_limiter() -> RateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter: RateLimiter = _build_rate_limiter()
bearer_scheme = HTTPBearer(auto_error=False)


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_current_account(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    service: AccountService = Depends(get_service),
) -> Account:
    """Authenticate the bearer access token of the request."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return service.sessions.authenticate_access_token(credentials.credentials)
    except IdentityError as exc:
        raise _http_error(exc) from exc


def require_admin(account: Account = Depends(get_current_account)) -> Account:
    if not account.is_admin():
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")
    return account


def _enforce_rate_limit(key: str) -> None:
    if not rate_limiter.allow(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


@auth_router.post("/token", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    response: Response,
    service: AccountService = Depends(get_service),
    user_agent: str | None = Header(default=None),
) -> TokenResponse:
    """Log in and receive an access token; the refresh token is set as a cookie."""
    limit_key = f"login:{payload.username.strip().lower()}"
    _enforce_rate_limit(limit_key)
    context = ClientContext(user_agent=user_agent)
    try:
        refresh_token = service.authenticate(payload.username, payload.password, context)
        access = service.renew_session(refresh_token, context)
    except IdentityError as exc:
        rate_limiter.record(limit_key)
        raise _http_error(exc) from exc
    rate_limiter.reset(limit_key)

    # the refresh token is only ever sent back to the renewal endpoint
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        max_age=settings.refresh_ttl_seconds,
        path=settings.refresh_cookie_path,
        domain=settings.app_domain or None,
        secure=True,
        httponly=True,
        samesite="strict",
    )
    return TokenResponse(token=access.token, expires_in=access.expires_in)


@auth_router.post("/renew", response_model=TokenResponse)
def renew(
    service: AccountService = Depends(get_service),
    user_agent: str | None = Header(default=None),
    refresh_token: str | None = Cookie(default=None, alias="refreshToken"),
) -> TokenResponse:
    """Exchange the refresh-token cookie for a new access token."""
    if not refresh_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing refresh token")
    token_hash = hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()[:12]
    limit_key = f"renew:{token_hash}"
    _enforce_rate_limit(limit_key)
    try:
        access = service.renew_session(refresh_token, ClientContext(user_agent=user_agent))
    except IdentityError as exc:
        rate_limiter.record(limit_key)
        raise _http_error(exc) from exc
    return TokenResponse(token=access.token, expires_in=access.expires_in)


@router.post("/reset-credentials", status_code=status.HTTP_204_NO_CONTENT)
def reset_credentials(
    payload: ResetCredentialsRequest,
    service: AccountService = Depends(get_service),
) -> Response:
    """Request a password reset mail; unknown usernames are not disclosed."""
    limit_key = f"reset:{payload.username.strip().lower()}"
    _enforce_rate_limit(limit_key)
    # each request may send a mail, so all of them count
    rate_limiter.record(limit_key)
    try:
        service.request_password_reset(payload.username)
    except ResourceNotFound:
        logger.info("password reset requested for unknown user")
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/set-password", status_code=status.HTTP_204_NO_CONTENT)
def set_password(
    payload: SetPasswordRequest,
    service: AccountService = Depends(get_service),
) -> Response:
    try:
        service.redeem_password_reset(payload.verification, payload.password)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/users/me", response_model=AccountResponse)
def get_me(account: Account = Depends(get_current_account)) -> AccountResponse:
    return AccountResponse.from_domain(account)


@router.put("/users/me", response_model=AccountResponse)
def update_me(
    payload: ProfileRequest,
    account: Account = Depends(get_current_account),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        updated = service.self_update(account, ProfileInput(**payload.model_dump()))
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(updated)


@router.patch("/users/me", response_model=AccountResponse)
def patch_me(
    fields: dict[str, Any] = Body(...),
    account: Account = Depends(get_current_account),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        updated = service.self_patch(account, fields)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(updated)


@router.put("/users/me/password", response_model=AccountResponse)
def update_my_password(
    payload: PasswordUpdateRequest,
    account: Account = Depends(get_current_account),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        updated = service.update_password(account, payload.verification, payload.password)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(updated)


@router.post("/verify-email", response_model=AccountResponse)
def verify_email(
    payload: VerifyEmailRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.verify_email(payload.token)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/users/me/tokens", response_model=list[SessionTokenResponse])
def list_my_tokens(
    account: Account = Depends(get_current_account),
    service: AccountService = Depends(get_service),
) -> list[SessionTokenResponse]:
    return [SessionTokenResponse.from_record(record) for record in service.list_sessions(account)]


@router.delete("/users/me/tokens/{token_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_my_token(
    token_id: str,
    account: Account = Depends(get_current_account),
    service: AccountService = Depends(get_service),
) -> Response:
    try:
        service.revoke_session(account, token_id)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/users", response_model=list[AccountResponse])
def list_accounts(
    role: str | None = Query(default=None),
    _: Account = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> list[AccountResponse]:
    """List accounts, optionally only those holding ``role``."""
    try:
        accounts = service.list_accounts(role)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return [AccountResponse.from_domain(account) for account in accounts]


@router.post("/users", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: AccountRequest,
    _: Account = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Create an account; duplicates by email are rejected."""
    try:
        account = service.create_account(payload.to_input())
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/users/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    _: Account = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    account = service.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    return AccountResponse.from_domain(account)


@router.put("/users/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: str,
    payload: AccountRequest,
    _: Account = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.update_account(account_id, payload.to_input())
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.patch("/users/{account_id}", response_model=AccountResponse)
def patch_account(
    account_id: str,
    fields: dict[str, Any] = Body(...),
    _: Account = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.patch_account(account_id, fields)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.delete("/users/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account(
    account_id: str,
    _: Account = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> Response:
    try:
        service.delete_account(account_id)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/users/{account_id}/terminate", status_code=status.HTTP_204_NO_CONTENT)
def terminate_account(
    account_id: str,
    _: Account = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> Response:
    """Log the account out of every session."""
    try:
        service.terminate(account_id)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _http_error(exc: IdentityError) -> HTTPException:
    headers = None
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    return HTTPException(status_code=exc.status_code, detail=exc.message, headers=headers)
