from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Form, Header, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from olakz_auth.api.schemas import (
    AppleSignInRequest,
    AuthResponse,
    ChangePasswordRequest,
    EmailOnlyRequest,
    Envelope,
    GoogleSignInRequest,
    InternalAddRoleRequest,
    InternalSendEmailRequest,
    LinkProviderRequest,
    LoginRequest,
    LogoutRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SwitchRoleRequest,
    TokenRefreshRequest,
    UpdateProfileRequest,
    UpdateRolesRequest,
    VerifyEmailRequest,
    ok,
)
from olakz_auth.logging import get_logger, hash_identifier
from olakz_auth.service.errors import (
    NotFound,
    RateLimited,
    ServerError,
    Unauthorized,
    ValidationError,
)
from olakz_auth.service.federated import PROVIDERS, ProviderIdentity
from olakz_auth.service.internal import INTERNAL_API_KEY_HEADER
from olakz_auth.service.runtime import check_rate_limit, get_runtime
from olakz_auth.service.tokens import AccessClaims, TokenPair
from olakz_auth.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

_HOUR = 3600


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one unit of ``key``'s bucket or raise ``RateLimited``."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=key.split(":", 1)[0])
        raise RateLimited(
            "Too many requests. Please try again later.",
            detail={"retry_after_seconds": reset_seconds},
        )
    return info


def _client_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host.replace("::ffff:", "")
    return "unknown"


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthorized("No token provided")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Authorization header must use the Bearer scheme")
    return token.strip()


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AccessClaims:
    """Verify the bearer access token; raises the token taxonomy on failure."""
    runtime = get_runtime()
    return runtime.tokens.verify_access_token(_bearer_token(authorization))


async def get_current_account(
    claims: AccessClaims = Depends(get_auth_context),
) -> Account:
    runtime = get_runtime()
    account = runtime.store.get_account(claims.account_id)
    if not account:
        raise NotFound("User not found")
    if not account.is_active:
        raise Unauthorized("Your account has been disabled. Please contact support.")
    return account


async def require_internal_key(
    x_internal_api_key: Optional[str] = Header(None, alias=INTERNAL_API_KEY_HEADER),
) -> None:
    runtime = get_runtime()
    if not runtime.internal.verify_internal_key(x_internal_api_key):
        raise Unauthorized("Invalid or missing internal API key")


def _auth_response(account: Account, pair: TokenPair, *, is_new_user: bool = False) -> AuthResponse:
    return AuthResponse(
        user=account.public_view(),
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
        is_new_user=is_new_user,
    )


def _federated_sign_in(provider: str, identity: ProviderIdentity) -> AuthResponse:
    runtime = get_runtime()
    account, created = runtime.federated.resolve_account(provider, identity)
    if not account.is_active:
        raise Unauthorized("Your account has been disabled. Please contact support.")
    account = runtime.store.record_login(account.id) or account
    pair = runtime.tokens.issue_token_pair(account, account.active_role)
    logger.info(
        "federated_sign_in",
        provider=provider,
        account_id=account.id,
        created=created,
    )
    return _auth_response(account, pair, is_new_user=created)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an email/password account and send the verification code.

    Rate limited per client address and per email.

    Raises:
        409: If the email is already registered
        429: If the hourly registration limit is exhausted
    """
    runtime = get_runtime()
    limit = runtime.settings.registration_rate_limit_per_hour
    await _enforce_rate_limit(
        runtime, f"register:ip:{_client_ip(request)}", limit, _HOUR, response=response
    )
    await _enforce_rate_limit(runtime, f"register:email:{body.email}", limit, _HOUR)
    result = await runtime.accounts.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
    )
    return ok(
        "Registration successful. Please check your email for verification code.",
        {"user": result.account.public_view(), "email_sent": result.email_sent},
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    account = await runtime.accounts.verify_email(body.email, body.otp)
    return ok(
        "Email verified successfully. You can now login.",
        {"user": account.public_view()},
    )


@router.post("/auth/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(body: EmailOnlyRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:resend:{body.email}",
        runtime.settings.otp_resend_limit_per_hour,
        _HOUR,
        response=response,
    )
    result = await runtime.accounts.resend_verification(body.email)
    return ok(
        "Verification code sent successfully. Please check your email.",
        {"email_sent": result.email_sent},
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid, the email is unverified or the
            account is disabled
        429: If the account is locked after repeated failures
    """
    runtime = get_runtime()
    account, pair = runtime.accounts.login(
        body.email, body.password, ip_address=_client_ip(request)
    )
    return ok("Login successful", _auth_response(account, pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    account, pair = runtime.tokens.refresh(body.refresh_token)
    return ok("Token refreshed successfully", _auth_response(account, pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    runtime.accounts.logout(body.refresh_token)
    return ok("Logout successful")


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(claims: AccessClaims = Depends(get_auth_context)):
    runtime = get_runtime()
    revoked = runtime.tokens.revoke_all(claims.account_id)
    return ok("Logged out from all devices", {"sessions_revoked": revoked})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailOnlyRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:reset:{body.email}",
        runtime.settings.otp_resend_limit_per_hour,
        _HOUR,
        response=response,
    )
    await runtime.accounts.forgot_password(body.email)
    return ok("If an account exists with this email, a password reset code has been sent.")


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    runtime.accounts.reset_password(body.email, body.otp, body.new_password)
    return ok("Password reset successful. Please login with your new password.")


@router.get("/auth/google", tags=["auth"])
async def google_auth(state: Optional[str] = Query(None, max_length=512)):
    """Redirect the browser to Google's consent screen."""
    runtime = get_runtime()
    return RedirectResponse(runtime.federated.google_auth_url(state), status_code=302)


@router.get("/auth/google/callback", response_model=Envelope, tags=["auth"])
async def google_callback(
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=512),
):
    runtime = get_runtime()
    if not code:
        raise ValidationError("Authorization code not provided")
    id_token = await runtime.federated.exchange_google_code(code)
    identity = await runtime.federated.verify_google_token(id_token)
    return ok("Google authentication successful", _federated_sign_in("google", identity))


@router.post("/auth/google/verify", response_model=Envelope, tags=["auth"])
async def google_verify(body: GoogleSignInRequest):
    runtime = get_runtime()
    identity = await runtime.federated.verify_google_token(body.id_token)
    return ok("Google authentication successful", _federated_sign_in("google", identity))


@router.post("/auth/apple/signin", response_model=Envelope, tags=["auth"])
async def apple_signin(body: AppleSignInRequest):
    """Sign in with an Apple identity token from a native client.

    Apple sends the user's name only on first authorization, so the client
    forwards it alongside the token.
    """
    runtime = get_runtime()
    identity = await runtime.federated.verify_apple_token(
        body.identity_token, first_name=body.first_name, last_name=body.last_name
    )
    return ok("Apple authentication successful", _federated_sign_in("apple", identity))


@router.post("/auth/apple/callback", response_model=Envelope, tags=["auth"])
async def apple_callback(
    code: Optional[str] = Form(None, max_length=2048),
    id_token: Optional[str] = Form(None, max_length=8192),
    state: Optional[str] = Form(None, max_length=512),
):
    """Handle Apple's ``form_post`` redirect for the web flow."""
    runtime = get_runtime()
    if not code and not id_token:
        raise ValidationError("Authorization code not provided")
    if not id_token:
        id_token = await runtime.federated.exchange_apple_code(code)
    identity = await runtime.federated.verify_apple_token(id_token)
    return ok("Apple authentication successful", _federated_sign_in("apple", identity))


@router.post("/auth/link/{provider}", response_model=Envelope, tags=["auth"])
async def link_provider(
    body: LinkProviderRequest,
    provider: str = Path(..., max_length=16),
    account: Account = Depends(get_current_account),
):
    runtime = get_runtime()
    if provider not in PROVIDERS:
        raise ValidationError("unsupported identity provider", detail={"provider": provider})
    identity = await runtime.federated.verify(provider, body.token)
    linked = runtime.federated.link_identity(account, provider, identity)
    return ok(
        "Provider linked successfully",
        {"provider": linked.provider, "linked_at": linked.created_at},
    )


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(account: Account = Depends(get_current_account)):
    runtime = get_runtime()
    data = account.public_view()
    data["linked_providers"] = [
        identity.provider for identity in runtime.store.list_identities(account.id)
    ]
    return ok("User retrieved successfully", data)


@router.put("/users/profile", response_model=Envelope, tags=["users"])
async def update_profile(
    body: UpdateProfileRequest, account: Account = Depends(get_current_account)
):
    runtime = get_runtime()
    updated = runtime.accounts.update_profile(
        account, **body.model_dump(exclude_unset=True)
    )
    return ok("Profile updated successfully", updated.public_view())


@router.patch("/users/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest, account: Account = Depends(get_current_account)
):
    """Change the password of an email/password account.

    Every refresh token of the account is revoked; the caller signs in again.

    Raises:
        400: If the account signs in through a provider or the current
            password is wrong
    """
    runtime = get_runtime()
    runtime.accounts.change_password(
        account, body.current_password, body.new_password
    )
    return ok("Password changed successfully. Please login with your new password.")


@router.put("/users/switch-role", response_model=Envelope, tags=["users"])
async def switch_role(
    body: SwitchRoleRequest, account: Account = Depends(get_current_account)
):
    runtime = get_runtime()
    updated, pair = runtime.roles.switch_active_role(account, body.role)
    return ok("Active role switched successfully", _auth_response(updated, pair))


@router.put("/users/role/{user_id}", response_model=Envelope, tags=["users"])
async def update_roles(
    body: UpdateRolesRequest,
    user_id: str = Path(..., max_length=64),
    claims: AccessClaims = Depends(get_auth_context),
):
    runtime = get_runtime()
    updated = runtime.roles.update_assigned_roles(
        claims, user_id, body.roles, body.active_role
    )
    return ok("Roles updated successfully", updated.public_view())


@router.post(
    "/internal/send-email",
    response_model=Envelope,
    tags=["internal"],
    dependencies=[Depends(require_internal_key)],
)
async def internal_send_email(body: InternalSendEmailRequest):
    runtime = get_runtime()
    sent = await asyncio.to_thread(runtime.email.send, body.to, body.subject, body.html)
    if not sent:
        logger.error("internal_email_failed", recipient_hash=hash_identifier(body.to))
        raise ServerError("Failed to send email")
    return ok("Email sent successfully")


@router.get(
    "/internal/users/{user_id}",
    response_model=Envelope,
    tags=["internal"],
    dependencies=[Depends(require_internal_key)],
)
async def internal_get_user(user_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    account = runtime.store.get_account(user_id)
    if not account:
        raise NotFound("User not found")
    return ok("User retrieved successfully", account.public_view())


@router.post(
    "/internal/users/{user_id}/roles",
    response_model=Envelope,
    tags=["internal"],
    dependencies=[Depends(require_internal_key)],
)
async def internal_add_role(
    body: InternalAddRoleRequest, user_id: str = Path(..., max_length=64)
):
    runtime = get_runtime()
    account = runtime.roles.add_role(user_id, body.role)
    return ok("Role added successfully", account.public_view())


__all__ = ["get_auth_context", "get_current_account", "require_internal_key", "router"]
